"""Test package for relay unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
