"""Allow running as: python -m bannerkit"""

import sys

from bannerkit.cli import main

sys.exit(main())
