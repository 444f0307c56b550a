import sys

from dicomeditor.cli import main

sys.exit(main())
