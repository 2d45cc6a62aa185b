"""
Rendition Backend - resumable uploads and derived viewable artifacts

This package provides a FastAPI-based upload service and a queue-driven worker
that together:

- Accept large files through resumable multipart uploads straight to S3
- Turn each completed upload into an asset version
- Render thumbnails, previews, PDF page images and zoomable tile pyramids
- Route failed render jobs to a dead-letter queue for inspection and replay

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - uploads: Upload session state machine and completion protocol
    - worker: Render job loop and dead-letter routing
    - pipeline: Mime dispatch to the format renderers
    - pdf_renderer, image_renderer, office_bridge: Format renderers
    - storage / job_queue / database: S3, Redis and SQLite collaborators
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn rendition_backend.main:app --host 0.0.0.0 --port 8000

    Run a worker with:
        rendition-worker run
"""
