import sys

from keytag.cli import main

sys.exit(main())
