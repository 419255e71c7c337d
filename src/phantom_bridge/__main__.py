"""phantom-bridge 入口点。

支持: python -m phantom_bridge
"""

import sys

from .app import main

if __name__ == "__main__":
    sys.exit(main())
