#!/usr/bin/env python3
"""CLI script for clustering face encodings stored in a JSON file.

The input is a JSON list of objects with an ``identifier`` (the asset the
face came from) and an ``encoding`` (list of floats):

    [{"identifier": "IMG_0001", "encoding": [0.01, -0.2, ...]}, ...]

Encodings are L2-normalized before clustering.

Usage:
    python scripts/cluster_encodings.py encodings.json
    python scripts/cluster_encodings.py encodings.json --algorithm dbscan --threshold 0.6
    python scripts/cluster_encodings.py encodings.json --output groups.json
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from deeplook.clustering import ClusterOptions, ClusterType, cluster
from deeplook.interfaces import BoundingBox, FaceObservation
from deeplook.linalg import normalize_l2
from deeplook.logging_config import setup_logging
from deeplook.models import Face

logger = setup_logging(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Cluster face encodings into identities",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "encodings",
        type=str,
        help="JSON file with a list of {identifier, encoding} objects",
    )

    parser.add_argument(
        "--algorithm",
        type=str,
        choices=[t.value for t in ClusterType],
        default=ClusterType.CHINESE_WHISPERS.value,
        help="Clustering algorithm",
    )

    parser.add_argument(
        "--threshold",
        type=float,
        default=0.7,
        help="Maximum encoding distance for two faces to be linked",
    )

    parser.add_argument(
        "--min-size",
        type=int,
        default=1,
        help="ChineseWhispers keeps clusters strictly larger than this",
    )

    parser.add_argument(
        "--iterations",
        type=int,
        default=100,
        help="Maximum ChineseWhispers iterations",
    )

    parser.add_argument(
        "--seed",
        type=int,
        default=0,
        help="Seed for the ChineseWhispers visitation order",
    )

    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional JSON file to write the groups of identifiers to",
    )

    return parser.parse_args()


def print_section(title: str) -> None:
    """Print a section divider."""
    print()
    print("=" * 70)
    print(f"  {title}")
    print("=" * 70)


def load_faces(path: Path) -> list[Face]:
    """Load faces from an encodings JSON file.

    Args:
        path: JSON file path

    Returns:
        Faces with normalized encodings, in file order.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If an entry is malformed
    """
    if not path.exists():
        raise FileNotFoundError(f"Encodings file not found: {path}")

    with open(path, "r") as f:
        entries = json.load(f)

    if not isinstance(entries, list):
        raise ValueError(f"Expected a JSON list in {path}, got {type(entries).__name__}")

    # Encodings carry no geometry
    observation = FaceObservation(bbox=BoundingBox(0.0, 0.0, 0.0, 0.0))

    faces = []
    for i, entry in enumerate(entries):
        try:
            identifier = str(entry["identifier"])
            encoding = normalize_l2(np.asarray(entry["encoding"], dtype=np.float64))
        except (KeyError, TypeError) as e:
            raise ValueError(f"Entry {i} is missing identifier/encoding: {e}") from e
        faces.append(Face(local_identifier=identifier, observation=observation, encoding=encoding))

    logger.info(f"Loaded {len(faces)} encodings from {path}")
    return faces


def main() -> int:
    args = parse_args()

    print_section("Cluster Face Encodings")

    try:
        options = ClusterOptions(
            minimum_cluster_size=args.min_size,
            number_iterations=args.iterations,
            threshold=args.threshold,
            cluster_type=ClusterType(args.algorithm),
            seed=args.seed,
        )
        faces = load_faces(Path(args.encodings))
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1

    if not faces:
        logger.warning("No encodings to cluster")
        return 0

    groups = cluster(faces, options)

    print_section("Results")
    print(f"  Faces:    {len(faces)}")
    print(f"  Clusters: {len(groups)}")
    print()
    for i, group in enumerate(groups):
        identifiers = [face.local_identifier for face in group]
        print(f"  [{i:3d}] {len(group):4d} face(s): {', '.join(identifiers[:5])}"
              f"{' ...' if len(identifiers) > 5 else ''}")

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            json.dump([[face.local_identifier for face in g] for g in groups], f, indent=2)
        logger.info(f"Saved {len(groups)} groups to {output_path}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
