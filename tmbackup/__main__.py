import sys

from tmbackup.cli import main


sys.exit(main())
