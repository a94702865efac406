import sys

from personaflow.cli import main

sys.exit(main())
