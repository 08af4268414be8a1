"""
CRM Sync Service

Reconciles locally-held person/organization records against a remote
constituent-relationship-management (CRM) REST API:
- Rate-limited, cached HTTPX client with normalized responses
- Email-verified constituent matching
- Contact sub-record reconciliation (at most one record per type)
- Payment attribution against the remote fund/campaign taxonomy
- Pydantic settings and structured logging with structlog
"""

__version__ = "0.1.0"
