"""Command-line interface for building a catalog snapshot.

Parses the catalog CSV files once, optionally precomputes every user's taste
embedding, and writes the result as a joblib snapshot the API can load at
startup (``TASTEMATCH_SNAPSHOT_PATH``).

Example:
    Build a snapshot from generated data:
        $ python scripts/build_snapshot.py data

    Precompute user embeddings into the snapshot:
        $ python scripts/build_snapshot.py data --output-dir snapshots --with-embeddings
"""

import argparse
import logging
import sys
from pathlib import Path

import pandas as pd

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tastematch.config import get_settings
from tastematch.recommender.service import TasteService
from tastematch.recommender.utils import build_stores, load_catalog_frames, save_snapshot


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the script.

    Args:
        verbose: If True, set log level to DEBUG. Otherwise, use INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_arguments() -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Namespace object containing parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="Build a catalog snapshot from CSV data.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/build_snapshot.py data
  python scripts/build_snapshot.py data --output-dir snapshots --with-embeddings
        """,
    )
    parser.add_argument(
        "data_dir",
        type=str,
        help="Directory containing features.csv, ownerships.csv and optionally users.csv",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="snapshots",
        help="Directory where the snapshot will be saved (default: snapshots)",
    )
    parser.add_argument(
        "--with-embeddings",
        action="store_true",
        help="Compute every user's taste embedding before saving",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    return parser.parse_args()


def precompute_embeddings(frames: dict) -> dict:
    """Aggregate every user's embedding and store it in the users frame."""
    logger = logging.getLogger(__name__)
    stores = build_stores(frames)
    service = TasteService(stores.feature_store, stores.ownership_store, stores.user_store)

    try:
        results = service.refresh_all_embeddings()
        logger.info(
            f"Embeddings: {results['processed']} computed, {results['failed']} failed "
            f"of {results['total']} users"
        )

        users = frames["users"].copy()
        embeddings = []
        for user_id in users["user_id"]:
            record = stores.user_store.get(str(user_id))
            embeddings.append(record.embedding if record is not None else None)
        users["embedding"] = pd.Series(embeddings, index=users.index, dtype=object)
        return {**frames, "users": users}
    finally:
        service.shutdown()


def main() -> int:
    """Main entry point for the snapshot script.

    Returns:
        Exit code: 0 on success, 1 on error.
    """
    try:
        args = parse_arguments()
        setup_logging(verbose=args.verbose)
        logger = logging.getLogger(__name__)

        settings = get_settings()
        logger.info(f"Loading catalog from {args.data_dir} (embedding_dim={settings.embedding_dim})")
        frames = load_catalog_frames(args.data_dir)

        if args.with_embeddings:
            frames = precompute_embeddings(frames)

        snapshot_path = save_snapshot(frames, args.output_dir)
        logger.info(f"Snapshot saved to: {snapshot_path.absolute()}")
        return 0

    except FileNotFoundError as e:
        logging.error(f"File error: {e}")
        return 1
    except ValueError as e:
        logging.error(f"Validation error: {e}")
        return 1
    except KeyboardInterrupt:
        logging.warning("Snapshot build interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
