"""
Runtime for the wavelab compute offload.

- pool: asyncio-side scheduler that admits, dispatches and cancels jobs
- compute_worker: main loop of each worker process
- handlers: payload parsing and dispatch to the dsp engines
- logging_config: structlog setup shared by the pool and its workers
"""
