import sys

from taskfuse.cli import main

sys.exit(main())
