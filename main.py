"""
SplitEasy — Entry Point.

Single entry point: `python main.py` runs the background sync service.
"""

import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from spliteasy.app import main

if __name__ == "__main__":
    main()
