import sys

from shran.cli import main

sys.exit(main())
