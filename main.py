"""
Wrapper to run the fillmem console.

Usage:
  python main.py
  python main.py --stats-source proc --interval-ms 1000
"""

import sys

from fillmem import main


if __name__ == "__main__":
    sys.exit(main())
