"""FrameBrew generation job pipeline.

Turns a text prompt into a scored, stored video through four chained stages
(generation → polling → download → scoring), mirrors every status change into
the record store, and streams progress to connected clients.

Entry points:
    python -m framebrew.main    API service (FastAPI + SSE)
    python -m framebrew.worker  Durable stage worker (PgQueuer)
"""

__version__ = "0.1.0"
