import sys

from meshcanary.cli import main

sys.exit(main())
