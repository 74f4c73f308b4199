import sys

from pactum.cli import main

sys.exit(main())
