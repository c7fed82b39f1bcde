"""JSON API for the inbox triage engine.

Provides a FastAPI-based interface for:
- Single-conversation reclassification
- Corrections and review confirmation
- Batch reconciliation pages
- Sender rule and review queue listings
"""

from inbox_triage.web.app import create_app

__all__ = ["create_app"]
