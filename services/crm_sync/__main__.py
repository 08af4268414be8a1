"""
Entry point for running the CRM sync service as a module.

Usage:
    python -m services.crm_sync [args]
"""

from .main import main

if __name__ == "__main__":
    exit(main())
