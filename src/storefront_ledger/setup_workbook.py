"""Bootstrap an empty storefront master workbook.

Run as ``storefront-setup`` (or ``python -m storefront_ledger.setup_workbook``).
The target path comes from ``[System] DataFile`` through the same config
helpers the CLI uses, and the sheet layout from ``data_manager.SHEET_COLUMNS``.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty master workbook with one bold header row per sheet.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)
    workbook = openpyxl.Workbook()
    # openpyxl always starts with a blank "Sheet".
    workbook.remove(workbook.active)

    header_font = Font(bold=True)
    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        worksheet.append(list(columns))
        for cell in worksheet[1]:
            cell.font = header_font

    data_manager.save_workbook(workbook, destination)
    log.info("Created master workbook with sheets %s at %s", ", ".join(sheet_columns), destination)
    return destination


def run_from_config(config_path: Optional[Path] = None, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``[System] DataFile`` in ``config_path``.

    Without ``config_path`` the config file is discovered the way the CLI
    discovers it.
    """
    resolved = data_manager.find_config_file(config_path).expanduser().resolve()
    parser = data_manager.read_config(resolved)
    settings = data_manager.parse_settings(parser, base_path=resolved.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create an empty storefront master workbook")
    parser.add_argument("--config", type=Path, help="Path to config.ini (default: search upward from cwd)")
    parser.add_argument("--force", action="store_true", help="Replace the workbook if it already exists.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        output_path = run_from_config(args.config, overwrite=args.force)
    except FileExistsError as exc:
        print(f"[ERROR] {exc}")
        print("Run with --force to replace it.")
        return 1
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"[ERROR] {exc}")
        return 1
    except OSError as exc:
        print(f"[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
