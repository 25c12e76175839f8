"""
Sample and synthetic upstream data
"""
from .generators import Dataset, DatasetGenerator, sample_dataset, seed_database

__all__ = [
    "Dataset",
    "DatasetGenerator",
    "sample_dataset",
    "seed_database",
]
