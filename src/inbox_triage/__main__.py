"""Entry point for running the triage engine as a module.

Usage:
    python -m inbox_triage validate-config
    python -m inbox_triage --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from inbox_triage.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
