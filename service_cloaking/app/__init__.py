"""
Cloaking Gateway Service package.

The service fronts the third-party cloaking API for the admin panel:
- Authentication: HS256 bearer tokens checked on every route
- Write-through forwarding for flows, filters, statistics and clicks
- A TTL cache for reference lists, warmed at startup and refreshed in
  the background
- Retries with linear backoff for transient upstream failures

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.adapters: HTTP client and form encoding for the upstream API.
- app.caching: Cache store, refresh scheduler and cache manager.
- app.domain: Auth middleware, payload builders and the write-through gateway.
"""
