#!/usr/bin/env python3
"""
Data Directory Initialization Script

Initializes the trading data directory with empty state files.
Run this before the first cycle; existing files are left untouched.
"""

import os
import json
from typing import List, Optional

from .config import TradingConfig
from .utils import utc_now


def initialize_data_directory(cfg: Optional[TradingConfig] = None) -> List[str]:
    """
    Create the data directory and any missing state files.

    Returns:
        Paths of the files that were created
    """
    cfg = cfg or TradingConfig.from_env()

    print(f"Initializing data directory: {cfg.data_dir}")
    os.makedirs(cfg.data_dir, exist_ok=True)

    files_to_create = {
        cfg.trades_file: {
            'trades': {},
            'last_updated': utc_now().isoformat()
        },
        cfg.source_stats_file: {
            'total_executions': 0,
            'global_success_rate': 0.0,
            'last_successful_sources': 0,
            'last_total_sources': 0,
            'sources': {},
            'last_update': None
        },
        cfg.unrecorded_fills_file: []
    }

    created = []
    for filepath, content in files_to_create.items():
        if os.path.exists(filepath):
            print(f"  Exists: {os.path.basename(filepath)}")
            continue
        with open(filepath, 'w') as f:
            json.dump(content, f, indent=2)
        created.append(filepath)
        print(f"✓ Created: {os.path.basename(filepath)}")

    # Audit log starts empty; it is append-only from here on
    if not os.path.exists(cfg.audit_log_file):
        open(cfg.audit_log_file, 'a').close()
        created.append(cfg.audit_log_file)
        print(f"✓ Created: {os.path.basename(cfg.audit_log_file)}")

    print("\nData directory initialized.")
    return created


if __name__ == '__main__':
    initialize_data_directory()
