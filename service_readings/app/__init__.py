"""
Readings Cache Service application package.

This package places a Redis cache in front of a PostgreSQL document store
for sensor readings and serves them through five caching policies:

- app.main: API surface for each policy, health and benchmark routes.
- app.policies: Key mapping, serialization, the policy engine and the
  write-behind flush scheduler.
- app.cache: Redis-backed cache store adapter.
- app.persistence: PostgreSQL-backed reading store adapter.

Guidelines:
- Adapters are opened once at startup and injected into the engine.
- Cache misses and absent readings are results, not errors.
- Write-behind persistence never reports back to the request that queued it.
"""
