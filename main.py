#!/usr/bin/env python3
"""
Development launcher for DarkEye.

- Keeps all state under ./data unless the environment says otherwise
- Enables debug logging (DEV=1)
- Runs the control server in the foreground; Ctrl-C exits cleanly
"""

import os
import sys
from pathlib import Path

from darkeye import server

DEV_DATA_DIR = Path.cwd() / "data"

DEV_ENV = {
    "DEV": "1",
    "DARKEYE_DB": str(DEV_DATA_DIR / "darkeye.db"),
    "REC_DIR": str(DEV_DATA_DIR / "recordings"),
    "HLS_DIR": str(DEV_DATA_DIR / "hls"),
    "MEDIAMTX_CONFIG": str(DEV_DATA_DIR / "mediamtx.yml"),
}


def main():
    for key, value in DEV_ENV.items():
        os.environ.setdefault(key, value)
    print(f"[dev] Running DarkEye with data in {DEV_DATA_DIR} (Ctrl-C to exit)")
    try:
        return server.cli_main(sys.argv[1:])
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
