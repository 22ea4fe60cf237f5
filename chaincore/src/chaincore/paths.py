"""
Shared path utilities for chainbooks data directories.
"""

from __future__ import annotations

import os
from pathlib import Path


def get_default_data_dir() -> Path:
    """
    Get the default chainbooks data directory.

    Returns ~/.chainbooks or $CHAINBOOKS_DATA_DIR if set.
    Creates the directory if it doesn't exist.
    """
    env_path = os.getenv("CHAINBOOKS_DATA_DIR")
    data_dir = Path(env_path) if env_path else Path.home() / ".chainbooks"

    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_ledger_path(data_dir: Path | None = None) -> Path:
    """
    Get the path to the ledger file holding wallets, transactions and lots.

    Args:
        data_dir: Optional data directory (defaults to get_default_data_dir())

    Returns:
        Path to ledger.json
    """
    if data_dir is None:
        data_dir = get_default_data_dir()
    return data_dir / "ledger.json"
