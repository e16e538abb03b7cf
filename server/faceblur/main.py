"""
FaceBlur - FastAPI Server
=========================

Hosts the suppression pipeline and its three external surfaces.

Endpoints:
- POST   /commands                      - Command channel (toggleBlur, scanPage, updateReferences)
- POST   /content/containers            - Insert a container node
- POST   /content/images                - Insert an image element (loaded or not)
- POST   /content/images/{id}/load      - Finish loading an image
- POST   /content/images/{id}/error     - Fail loading an image
- DELETE /content/nodes/{id}            - Remove a node and its images
- GET    /content/images                - Images with lifecycle state
- GET    /content/images/{id}/render    - Image bytes, obscured while suppressed
- POST   /content/images/{id}/click     - Toggle reveal of a suppressed image
- GET    /references                    - Current reference set
- POST   /references                    - Add a reference photo
- DELETE /references                    - Clear the reference set
- POST   /references/sync               - Rebuild the reference set from a folder
- GET    /health                        - Health check
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from faceblur import __version__
from faceblur.config import Settings, get_settings
from faceblur.content import ContentNode, ImageElement
from faceblur.database import SettingsStore
from faceblur.detection import DlibFaceDetector, FaceDetector
from faceblur.errors import ContractError, NoFaceDetectedError
from faceblur.fingerprint import dump_fingerprints
from faceblur.log import configure_logging
from faceblur.models import (
    Ack, Command, ErrorCode, ErrorResponse, HealthResponse, ImageInfo,
    ImageListResponse, NodeResponse, ReferenceListResponse,
    ReferenceSyncResponse, ReferenceUploadResponse, StatsResponse
)
from faceblur.pipeline import FaceBlurPipeline

START_TIME = time.time()

api = APIRouter()


def get_pipeline(request: Request) -> FaceBlurPipeline:
    return request.app.state.pipeline


def _require_node(pipeline: FaceBlurPipeline, node_id: str) -> ContentNode:
    node = pipeline.tree.get(node_id)
    if node is None:
        raise HTTPException(
            status_code=404,
            detail={"error_code": ErrorCode.NODE_NOT_FOUND, "message": f"No node {node_id}"}
        )
    return node


def _require_image(pipeline: FaceBlurPipeline, element_id: str) -> ImageElement:
    node = _require_node(pipeline, element_id)
    if not isinstance(node, ImageElement):
        raise HTTPException(
            status_code=404,
            detail={"error_code": ErrorCode.NODE_NOT_FOUND, "message": f"{element_id} is not an image"}
        )
    return node


# ============================================================================
# Health & Info Endpoints
# ============================================================================

@api.get("/", tags=["Info"])
async def root(pipeline: FaceBlurPipeline = Depends(get_pipeline)):
    """Root endpoint with API information."""
    return {
        "name": "FaceBlur API",
        "version": __version__,
        "fingerprint_kind": pipeline.settings.fingerprint_kind.value,
        "face_detector": pipeline.detector.name,
        "docs": "/docs",
        "health": "/health"
    }


@api.get("/health", response_model=HealthResponse, tags=["Info"])
async def health_check(pipeline: FaceBlurPipeline = Depends(get_pipeline)):
    """Check pipeline health."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        enabled=pipeline.state.enabled,
        total_references=len(pipeline.state.references),
        fingerprint_kind=pipeline.settings.fingerprint_kind.value,
        face_detector=pipeline.detector.name,
        queued=pipeline.scheduler.pending,
        is_processing=pipeline.scheduler.is_processing,
        lifecycle=pipeline.tracker.counts(),
        stats=StatsResponse(**pipeline.scheduler.stats.as_dict()),
        uptime_seconds=time.time() - START_TIME
    )


# ============================================================================
# Command Channel
# ============================================================================

@api.post("/commands", response_model=Ack, tags=["Commands"])
async def handle_command(command: Command, pipeline: FaceBlurPipeline = Depends(get_pipeline)):
    """
    Apply a command and acknowledge it immediately.

    The acknowledgement only confirms receipt; discovery and detection
    continue in the background.
    """
    return pipeline.router.handle(command)


# ============================================================================
# Content Stream Endpoints
# ============================================================================

@api.post("/content/containers", response_model=NodeResponse, tags=["Content"])
async def add_container(
    parent_id: Optional[str] = Form(None, description="Parent node, defaults to the root"),
    pipeline: FaceBlurPipeline = Depends(get_pipeline)
):
    if parent_id:
        _require_node(pipeline, parent_id)
    node = pipeline.tree.append(ContentNode(), parent_id)
    return NodeResponse(node_id=node.node_id, parent_id=node.parent.node_id)


@api.post("/content/images", response_model=NodeResponse, tags=["Content"])
async def add_image(
    image: Optional[UploadFile] = File(None, description="Image bytes; omit to insert a still-loading image"),
    src: str = Form("", description="Source URL, informational"),
    parent_id: Optional[str] = Form(None, description="Parent node, defaults to the root"),
    cross_origin: bool = Form(False, description="Pixels are not readable"),
    pipeline: FaceBlurPipeline = Depends(get_pipeline)
):
    """Insert an image element into the content tree."""
    if parent_id:
        _require_node(pipeline, parent_id)

    element = ImageElement(src=src or (image.filename if image else ""), cross_origin=cross_origin)
    if image is not None:
        element.load(await image.read())

    pipeline.tree.append(element, parent_id)
    return NodeResponse(node_id=element.node_id, parent_id=element.parent.node_id)


@api.post("/content/images/{element_id}/load", response_model=ImageInfo, tags=["Content"])
async def load_image(
    element_id: str,
    image: UploadFile = File(...),
    pipeline: FaceBlurPipeline = Depends(get_pipeline)
):
    """Complete loading of a previously inserted image."""
    element = _require_image(pipeline, element_id)
    element.load(await image.read())
    return pipeline.describe(element)


@api.post("/content/images/{element_id}/error", response_model=ImageInfo, tags=["Content"])
async def fail_image(element_id: str, pipeline: FaceBlurPipeline = Depends(get_pipeline)):
    element = _require_image(pipeline, element_id)
    element.fail()
    return pipeline.describe(element)


@api.delete("/content/nodes/{node_id}", response_model=NodeResponse, tags=["Content"])
async def remove_node(node_id: str, pipeline: FaceBlurPipeline = Depends(get_pipeline)):
    """Remove a node; its images are evicted from lifecycle tracking."""
    _require_node(pipeline, node_id)
    try:
        pipeline.tree.remove(node_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error_code": ErrorCode.PROCESSING_ERROR, "message": str(e)})
    return NodeResponse(node_id=node_id)


@api.get("/content/images", response_model=ImageListResponse, tags=["Content"])
async def list_images(pipeline: FaceBlurPipeline = Depends(get_pipeline)):
    images = [pipeline.describe(element) for element in pipeline.tree.images()]
    return ImageListResponse(total_images=len(images), images=images)


@api.get("/content/images/{element_id}", response_model=ImageInfo, tags=["Content"])
async def get_image(element_id: str, pipeline: FaceBlurPipeline = Depends(get_pipeline)):
    return pipeline.describe(_require_image(pipeline, element_id))


@api.post("/content/images/{element_id}/click", response_model=ImageInfo, tags=["Content"])
async def click_image(element_id: str, pipeline: FaceBlurPipeline = Depends(get_pipeline)):
    """Deliver a click; suppressed images toggle between obscured and revealed."""
    element = _require_image(pipeline, element_id)
    element.click()
    return pipeline.describe(element)


@api.get("/content/images/{element_id}/render", tags=["Content"])
async def render_image(element_id: str, pipeline: FaceBlurPipeline = Depends(get_pipeline)):
    """Image bytes as displayed: obscured while suppressed and not revealed."""
    element = _require_image(pipeline, element_id)
    if not element.is_ready:
        raise HTTPException(
            status_code=409,
            detail={"error_code": ErrorCode.INVALID_IMAGE, "message": "Image has not loaded"}
        )
    try:
        content, img_format = pipeline.processor.render(element.data, pipeline.suppression.is_obscured(element))
    except Exception as e:
        raise HTTPException(status_code=422, detail={"error_code": ErrorCode.INVALID_IMAGE, "message": str(e)})
    return Response(content=content, media_type=f"image/{img_format}")


# ============================================================================
# Reference Set Endpoints
# ============================================================================

@api.get("/references", response_model=ReferenceListResponse, tags=["References"])
async def list_references(pipeline: FaceBlurPipeline = Depends(get_pipeline)):
    return ReferenceListResponse(
        total_references=len(pipeline.state.references),
        fingerprint_kind=pipeline.settings.fingerprint_kind.value,
        fingerprints=dump_fingerprints(pipeline.state.references)
    )


@api.post(
    "/references",
    response_model=ReferenceUploadResponse,
    responses={400: {"model": ErrorResponse}},
    tags=["References"]
)
async def add_reference(
    photo: UploadFile = File(..., description="Photo containing the face to hide"),
    pipeline: FaceBlurPipeline = Depends(get_pipeline)
):
    """
    Add a reference face.

    The largest face in the photo is fingerprinted and appended to the
    reference set; the photo itself is not kept.
    """
    image_bytes = await photo.read()
    try:
        await pipeline.add_reference_photo(image_bytes)
    except NoFaceDetectedError as e:
        raise HTTPException(
            status_code=400,
            detail={"error_code": ErrorCode.NO_FACE_DETECTED, "message": str(e)}
        )
    except ContractError as e:
        raise HTTPException(
            status_code=400,
            detail={"error_code": ErrorCode.CONTRACT_VIOLATION, "message": str(e)}
        )
    except Exception as e:
        raise HTTPException(
            status_code=400,
            detail={"error_code": ErrorCode.INVALID_IMAGE, "message": str(e)}
        )

    return ReferenceUploadResponse(
        status="success",
        message="Reference face added. Original photo discarded.",
        total_references=len(pipeline.state.references)
    )


@api.post("/references/sync", response_model=ReferenceSyncResponse, tags=["References"])
async def sync_references(pipeline: FaceBlurPipeline = Depends(get_pipeline)):
    """
    Rebuild the reference set from the photos in FACEBLUR_REFERENCE_DIR.

    One fingerprint per photo, labelled by filename. Photos without a face
    are skipped. The previous set is replaced, not extended.
    """
    names = await pipeline.sync_reference_directory()
    return ReferenceSyncResponse(
        status="success",
        loaded=names,
        total_references=len(pipeline.state.references)
    )


@api.delete("/references", response_model=ReferenceUploadResponse, tags=["References"])
async def clear_references(pipeline: FaceBlurPipeline = Depends(get_pipeline)):
    pipeline.router.replace_references([])
    return ReferenceUploadResponse(status="success", message="Reference set cleared", total_references=0)


# ============================================================================
# Application Setup
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    detector: Optional[FaceDetector] = None,
    store: Optional[SettingsStore] = None
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        pipeline = FaceBlurPipeline(
            settings,
            detector or DlibFaceDetector(model=settings.detector_model),
            store or SettingsStore(settings.database_url, settings.encryption_key),
        )
        await pipeline.start()
        app.state.pipeline = pipeline
        yield
        await pipeline.stop()

    app = FastAPI(
        title="FaceBlur API",
        description="""
        ## Reference-face suppression for a dynamic image stream

        Images inserted into the content tree are discovered, checked for
        faces and blurred when a face matches the reference set.

        ### Fingerprint strategies
        - `hash` (default): 64-bit landmark hash with a landmark-distance check
        - `embedding`: dlib 128-dim encodings, Euclidean threshold 0.6
        """,
        version=__version__,
        lifespan=lifespan
    )

    # CORS - allow browser clients to connect
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("faceblur.main:app", host="0.0.0.0", port=8000, reload=True)
