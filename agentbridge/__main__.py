import sys

from agentbridge.cli import main

sys.exit(main())
