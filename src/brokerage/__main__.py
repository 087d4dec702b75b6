"""Run the brokerage service with ``python -m brokerage``."""

import asyncio

from brokerage.app import main

asyncio.run(main())
