"""
Clip batch services

Services for the generation-job pipeline:
- credentials: rotating provider credential pool
- scheduling: throttled batch release
- generation: provider client, unit model and operation polling
- retry: per-unit retry and cancellation
- streaming: progress events and NDJSON framing
- history: durable per-unit mirror
- merge: ordered concatenation of completed clips
- orchestrator: job orchestration and the HTTP API
"""
