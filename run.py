"""Run the autodeploy supervisor."""

import sys

from autodeploy.__main__ import main

if __name__ == "__main__":
    sys.exit(main())
