"""
Rivel Backend - REST API for image and document utilities

This package provides a FastAPI-based web service that offers:

- Prompt-to-image generation through a queued, single-worker scheduler
- Live queue position and ETA feedback for polling clients
- AI-generated image detection with a short-lived result cache
- Image resizing, target-size compression and format conversion
- Images-to-PDF and PDF-to-images conversion
- Per-caller fixed-window rate limiting on every /api route

Generation and detection run on hosted Hugging Face Spaces; this service
queues work for them and reports progress, it does not run models itself.

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_store: Job records, FIFO queue, ETA estimates and TTL eviction
    - queue_worker: The single background task that executes queued jobs
    - generation: Gradio clients for the generation and detection Spaces
    - imaging: Pillow and pdftoppm based conversions
    - cache: TTL result cache for detection
    - middleware: Fixed-window rate limiter
    - configuration: Settings loading and merging logic
    - models: Pydantic models for request/response validation
    - utils: Form field coercion helpers

Usage:
    Run the API server with:
        uvicorn rivel_backend.main:app --reload --host 0.0.0.0 --port 8080

    Or use the console script:
        rivel-backend

Architecture Principles:
    - One process, one event loop, one running generation job at a time
    - Shared state created at startup and injected into handlers
    - Blocking work (remote calls, image codecs) kept off the event loop
    - Configuration transparency through packaged defaults and env overrides
"""
