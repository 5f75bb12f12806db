"""
Domain layer for agent email routing and intelligence.

This layer contains:
- Data models (type-safe structures)
- Recipient resolution and the security policy engine
- The ingestion pipeline, report cache and batch analysis queue
- Result types (explicit success/failure handling)
"""
