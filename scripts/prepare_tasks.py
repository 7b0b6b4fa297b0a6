#!/usr/bin/env python3
"""
Validate and normalize a task catalog for the conclusion evaluation labeler.

Accepts any catalog shape the server understands (a flat list, {"tasks": [...]}
or {"trainingTasks": [...], "evaluationTasks": [...]}), checks every task,
writes the normalized split JSON and prints how the evaluation tasks fall
into blocks.

Usage:
    python scripts/prepare_tasks.py raw_tasks.json
    python scripts/prepare_tasks.py raw_tasks.json --output data/tasks.json
    python scripts/prepare_tasks.py raw_tasks.json --block-size 10 --check
"""

import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from evalblocks import BLOCK_SIZE, CatalogFormatError, TaskCatalog, catalog_to_dict, load_catalog

DEFAULT_OUTPUT = Path(__file__).parent.parent / "data" / "tasks.json"  # Must match app.py TASKS_PATH


def block_layout(catalog: TaskCatalog, block_size: int) -> list[dict]:
    """Describe each block: number, task range, capacity, first and last task ids."""
    layout = []
    for block_number in range(catalog.block_count(block_size)):
        start, end = catalog.block_bounds(block_number, block_size)
        tasks = catalog.block_tasks(block_number, block_size)
        layout.append({
            "block_number": block_number,
            "start": start,
            "end": end,
            "capacity": len(tasks),
            "first_task_id": tasks[0].id,
            "last_task_id": tasks[-1].id,
        })
    return layout


def write_catalog(catalog: TaskCatalog, output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(catalog_to_dict(catalog), f, indent=2, ensure_ascii=False)


def print_layout(catalog: TaskCatalog, block_size: int) -> None:
    print(f"Training tasks:   {len(catalog.training_tasks)}")
    print(f"Evaluation tasks: {catalog.size}")
    print(f"Block size:       {block_size}")
    print(f"Blocks:           {catalog.block_count(block_size)}")
    print()
    for block in block_layout(catalog, block_size):
        partial = "" if block["capacity"] == block_size else "  (partial)"
        print(
            f"  Block {block['block_number']:>3}: tasks {block['start']}-{block['end'] - 1} "
            f"[{block['first_task_id']} .. {block['last_task_id']}] "
            f"{block['capacity']} tasks{partial}"
        )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Validate and normalize a task catalog")
    parser.add_argument(
        "input",
        type=Path,
        help="Task catalog JSON file",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=DEFAULT_OUTPUT,
        help=f"Where to write the normalized catalog (default: {DEFAULT_OUTPUT})",
    )
    parser.add_argument(
        "--block-size",
        type=int,
        default=BLOCK_SIZE,
        help=f"Tasks per block (default: {BLOCK_SIZE})",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Validate and print the layout without writing anything",
    )
    args = parser.parse_args(argv)

    if args.block_size <= 0:
        print("Error: --block-size must be positive")
        return 1

    try:
        catalog = load_catalog(args.input)
    except FileNotFoundError:
        print(f"Error: {args.input} not found")
        return 1
    except CatalogFormatError as e:
        print(f"Error: {e}")
        return 1

    print_layout(catalog, args.block_size)

    if not args.check:
        write_catalog(catalog, args.output)
        print()
        print(f"Normalized catalog written to: {args.output}")

    print("\nDone!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
