"""Entry point for `python -m fleetguard`.

Usage:
    python -m fleetguard
"""

from __future__ import annotations

import asyncio

from fleetguard.app import main

asyncio.run(main())
