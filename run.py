#!/usr/bin/env python3
"""Server manager runner"""
import sys
from mcmanager import create_manager
from mcmanager.config import ConfigError

if __name__ == '__main__':
    config_path = sys.argv[1] if len(sys.argv) > 1 else None

    try:
        manager = create_manager(config_path)
    except ConfigError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    sys.exit(manager.run())
