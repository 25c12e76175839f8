"""
Financial Rollup Engine

Pre-computes revenue, refund and customer spend rollups per day and month
so reports never aggregate raw orders at query time.
"""

__version__ = "1.0.0"
