"""Test package for huddle unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
