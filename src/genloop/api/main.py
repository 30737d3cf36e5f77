"""genloop - FastAPI Application.

This module defines the FastAPI ``app`` instance, the REST routes that expose
the generation engine, and the ``main()`` CLI function that launches the
uvicorn server.

Architecture
------------
- **One engine per process**: the lifespan handler creates a single
  :class:`~genloop.core.pipeline.GenerationEngine` and stores it on
  ``app.state``.  The engine serialises all model work internally.
- **Blocking routes**: the handlers are plain ``def`` functions, so FastAPI
  runs them in its threadpool and model inference never blocks the event
  loop.
- **Shutdown**: models are disposed when the server stops.

Endpoints
---------
========  ==========================  =====================================
Method    Path                        Purpose
========  ==========================  =====================================
GET       ``/api/status``             Engine state and loaded model info
POST      ``/api/models/load``        Load the three models and tokenizer
POST      ``/api/models/dispose``     Release all models
POST      ``/api/generate``           Generate; base64 RGBA + metadata
POST      ``/api/generate/png``       Generate; PNG image
========  ==========================  =====================================

Usage
-----
CLI (installed entry point)::

    genloop

Direct invocation::

    python -m genloop.api.main
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from PIL import Image

from genloop import __version__
from genloop.api.models import (
    GenerateRequest,
    GenerateResponse,
    GenerationMetadataModel,
    LoadModelsRequest,
    OperationResponse,
)
from genloop.core.config import config
from genloop.core.model_manager import ModelManager, ModelPaths
from genloop.core.models import GenerationResult
from genloop.core.pipeline import GenerationEngine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application lifecycle - engine setup and teardown.
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the engine on startup and dispose its models on shutdown.

    Models are only loaded at startup when ``config.autoload_models`` is set;
    otherwise the client calls ``POST /api/models/load``.  Until then every
    generation is served by the fallback image.

    Loading and disposal run in a worker thread, never on the event loop.
    """
    engine = GenerationEngine(ModelManager(config), config)
    app.state.engine = engine
    logger.info("GenerationEngine initialised (no models loaded yet).")

    if config.autoload_models:
        result = await asyncio.to_thread(engine.load_models)
        if not result.success:
            logger.warning("Autoload failed; serving fallback images: %s", result.error)

    yield

    await asyncio.to_thread(app.state.engine.dispose_models)
    logger.info("Models disposed on shutdown.")


app = FastAPI(
    title="genloop",
    description="Real-time text-to-image generation engine.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _engine(request: Request) -> GenerationEngine:
    return request.app.state.engine


def _to_response(result: GenerationResult) -> GenerateResponse:
    if not result.success:
        return GenerateResponse(success=False, error=result.error)
    return GenerateResponse(
        success=True,
        pixels=base64.b64encode(result.pixels).decode("ascii"),
        metadata=GenerationMetadataModel(**result.metadata.to_dict()),
    )


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


@app.get("/api/status")
def get_status(request: Request) -> dict:
    """Return engine state, readiness, backend and model signatures."""
    status = _engine(request).status()
    status["version"] = __version__
    return status


@app.post("/api/models/load", response_model=OperationResponse)
def load_models(req: LoadModelsRequest, request: Request) -> OperationResponse:
    """Load the text encoder, denoiser, decoder and tokenizer.

    Returns ``success=False`` with the failure reason rather than an HTTP
    error, matching the other lifecycle operations.
    """
    paths = ModelPaths.from_config(config).with_overrides(**req.path_overrides())
    result = _engine(request).load_models(req.backend, paths)
    return OperationResponse(success=result.success, error=result.error)


@app.post("/api/models/dispose", response_model=OperationResponse)
def dispose_models(request: Request) -> OperationResponse:
    """Release all models.  Succeeds when nothing is loaded."""
    result = _engine(request).dispose_models()
    return OperationResponse(success=result.success, error=result.error)


@app.post("/api/generate", response_model=GenerateResponse)
def generate(req: GenerateRequest, request: Request) -> GenerateResponse:
    """Generate an image and return raw RGBA pixels as base64.

    Invalid requests (blank prompt, dimensions not divisible by 8) return
    ``success=False``.  Model failures are masked by the fallback image;
    check ``metadata.source``.
    """
    result = _engine(request).generate(req.to_generation_request())
    return _to_response(result)


@app.post("/api/generate/png")
def generate_png(req: GenerateRequest, request: Request) -> Response:
    """Generate an image and return it encoded as PNG.

    Raises:
        HTTPException: 400 if the request fails validation.
    """
    result = _engine(request).generate(req.to_generation_request())
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)

    meta = result.metadata
    image = Image.frombytes("RGBA", (meta.width, meta.height), result.pixels)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")

    headers = {"X-Genloop-Source": meta.source, "X-Genloop-Seed": str(meta.seed)}
    return Response(content=buffer.getvalue(), media_type="image/png", headers=headers)


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Host and port come from ``GENLOOP_SERVER_HOST`` / ``GENLOOP_SERVER_PORT``
    (default ``0.0.0.0:7860``).  Registered as the ``genloop`` console script.
    """
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "genloop.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
