"""Allow ``python -m jobdedup``."""
from jobdedup.cli import main

if __name__ == "__main__":
    main()
