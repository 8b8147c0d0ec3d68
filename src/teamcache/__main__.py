"""Allow running as ``python -m teamcache``."""

from teamcache.cli import main

if __name__ == "__main__":
    main()
