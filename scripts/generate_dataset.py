"""
Upstream Dataset Generator

Writes a synthetic order dataset as parquet extracts, or seeds it into the
configured upstream database.

    python scripts/generate_dataset.py --orders 100000 --out data/generated
    python scripts/generate_dataset.py --sample --seed-db
"""

import argparse
import asyncio
from datetime import datetime
from pathlib import Path

from rollup_engine.config import get_settings
from rollup_engine.config.logging import configure_logging
from rollup_engine.data.generators import DatasetGenerator, sample_dataset, seed_database
from rollup_engine.database.connection import create_engine_for, create_schema, create_session_factory

OUTPUT_DIR = Path(__file__).parent.parent / "data" / "generated"


async def seed(dataset) -> None:
    settings = get_settings()
    engine = create_engine_for(settings.database.upstream_url, echo=settings.database.echo)
    try:
        await create_schema(engine)
        await seed_database(create_session_factory(engine), dataset)
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate upstream order data")
    parser.add_argument("--orders", type=int, default=10_000, help="Number of orders")
    parser.add_argument("--customers", type=int, default=1_000, help="Number of customers")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--start", type=datetime.fromisoformat, default=datetime(2024, 1, 1))
    parser.add_argument("--end", type=datetime.fromisoformat, default=datetime(2024, 12, 31))
    parser.add_argument("--sample", action="store_true", help="Use the small canonical sample instead")
    parser.add_argument("--out", type=Path, default=OUTPUT_DIR, help="Parquet output directory")
    parser.add_argument("--seed-db", action="store_true", help="Load into the upstream database")
    args = parser.parse_args()

    configure_logging()

    if args.sample:
        dataset = sample_dataset()
    else:
        generator = DatasetGenerator(seed=args.seed, n_customers=args.customers)
        dataset = generator.generate(n_orders=args.orders, start_date=args.start, end_date=args.end)

    if args.seed_db:
        asyncio.run(seed(dataset))
    else:
        dataset.write_parquet(args.out)


if __name__ == "__main__":
    main()
