"""Allow ``python -m sample_weave``."""

from .cli.main import main

if __name__ == "__main__":
    main()
