import sys

from avatar_build.cli import main

sys.exit(main())
