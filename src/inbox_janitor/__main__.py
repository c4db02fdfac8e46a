"""Allow ``python -m inbox_janitor``; same entry point as the inbox-janitor script."""

from inbox_janitor.cli import main

if __name__ == "__main__":
    main()
