import sys

from omnibuild.cli import main

sys.exit(main())
