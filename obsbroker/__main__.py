import sys

from obsbroker.cli import main

sys.exit(main())
