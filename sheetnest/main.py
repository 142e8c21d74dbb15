"""
FastAPI surface for the nesting engine

Exposes a nesting pass and the raw no-fit raster over HTTP.
Run with: uvicorn sheetnest.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .dispatch import get_dispatcher
from .models import (
    DuplicateNestingIdError,
    ErrorResponse,
    NestingError,
    NestRequest,
    NestResponse,
    NoFitRequest,
    NoFitResponse,
)
from .nesting import nest
from .raster import no_fit_raster
from .utils import get_logger, setup_logging

logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(get_settings().log_level)
    yield


# Initialize FastAPI app
app = FastAPI(
    title="Sheet Nesting API",
    description="REST API for raster no-fit nesting of parts with holes onto sheet stock",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Configure CORS for web UI
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["Root"])
async def root():
    """API root endpoint"""
    return {
        "message": "Sheet Nesting API v1.0",
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    settings = get_settings()
    return {
        "status": "healthy",
        "dispatcher": settings.dispatcher,
        "default_pitch": settings.default_pitch,
    }


# ============================================================================
# NESTING ENDPOINTS
# ============================================================================

@app.post("/api/nest", response_model=NestResponse, tags=["Nesting"])
def nest_parts(request: NestRequest):
    """
    Run one nesting pass

    - **nesting**: the sheet, its already nested parts and boundary obstacles
    - **design_parts**: parts to place, each tagged with its sheet id
    - **config**: gaps, raster pitch, rotations and embedding options

    Returns the newly nested parts, the ones that did not fit and the
    embedded-parts dictionary.
    """
    if not request.design_parts:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No parts provided for nesting"
        )

    try:
        result = nest(request.nesting, request.design_parts, request.config)
    except DuplicateNestingIdError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except NestingError as e:
        logger.error(f"Nesting failed on sheet {request.nesting.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Nesting failed: {str(e)}"
        )

    num_nested = len(result.newly_nested_design_document_parts)
    return NestResponse(
        success=True,
        result=result,
        num_nested=num_nested,
        num_not_nested=len(result.not_nested_design_document_parts),
        message=f"Nested {num_nested} of {len(request.design_parts)} parts on sheet {request.nesting.id}"
    )


@app.post("/api/nfp", response_model=NoFitResponse, tags=["Nesting"])
def no_fit(request: NoFitRequest):
    """
    Forbidden positions of the orbiting polygon's minimum corner

    Both polygons are sampled on the lattice through the origin with the
    requested pitch.
    """
    if len(request.stationary) < 3 or len(request.orbiting) < 3:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Polygons need at least 3 points"
        )
    positions = no_fit_raster(request.stationary, request.orbiting, request.pitch, dispatcher=get_dispatcher())
    return NoFitResponse(success=True, positions=positions, count=len(positions))


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Custom HTTP exception handler"""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.detail,
            detail=str(exc)
        ).model_dump()
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("sheetnest.main:app", host="0.0.0.0", port=8000, reload=True)
