import numpy as np
from fastapi import FastAPI, File, HTTPException, Query, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from upscaler import __version__
from upscaler.core.config import settings
from upscaler.core.result import UpscaleResult
from upscaler.core.utils import errors, image_processing
from upscaler.services._utils import decode_image, encode_png, summarize_result
from upscaler.services.result_store import ResultStore
from upscaler.services.upscale_orchestrator import UpscaleOrchestrator

app = FastAPI(
    title=settings.PROJECT_NAME,
    description="API for progressive and chunked image upscaling",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

orchestrator = UpscaleOrchestrator()
results = ResultStore(settings.MAX_RESULTS)


@app.get("/")
async def root():
    return {"message": "Welcome to Progressive Upscaler API"}


@app.get("/health")
async def health_check():
    return {"status": "healthy", "stored_results": len(results)}


@app.post("/upscale")
async def upscale(
    file: UploadFile = File(...),
    scale_factor: float = Query(..., gt=0),
):
    contents = await file.read()
    try:
        image = decode_image(contents)
        result = await run_in_threadpool(orchestrator.process, image, scale_factor)
    except errors.InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except errors.ProcessingFailedError as e:
        raise HTTPException(status_code=507, detail=str(e))

    result_id = results.add(result)
    return JSONResponse(
        content={
            "status": "success",
            "message": "Image processed successfully",
            "result": summarize_result(result_id, result),
        }
    )


@app.get("/results/{result_id}")
async def get_result(result_id: str):
    return summarize_result(result_id, _get_result(result_id), include_preview=False)


@app.get("/results/{result_id}/preview")
async def get_preview(result_id: str):
    result = _get_result(result_id)
    return Response(content=encode_png(result.preview.buffer), media_type="image/png")


@app.get("/results/{result_id}/chunk")
async def get_chunk(
    result_id: str,
    x: int = Query(0),
    y: int = Query(0),
    width: int = Query(...),
    height: int = Query(...),
):
    result = _get_result(result_id)
    if width * height > orchestrator.limits.max_safe_pixel_count:
        raise HTTPException(status_code=400, detail="Requested chunk exceeds surface limits.")

    try:
        if result.is_chunked:
            chunk = await run_in_threadpool(
                result.output.image.get_chunk, x, y, width, height
            )
        else:
            chunk = _crop_region(result.output.buffer, x, y, width, height)
    except errors.RegionOutOfRangeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except errors.AllocationError as e:
        raise HTTPException(status_code=507, detail=str(e))

    return Response(content=encode_png(chunk), media_type="image/png")


@app.delete("/results/{result_id}")
async def delete_result(result_id: str):
    if not results.remove(result_id):
        raise HTTPException(status_code=404, detail=f"Unknown result {result_id}.")
    return {"status": "deleted", "id": result_id}


def _get_result(result_id: str) -> UpscaleResult:
    result = results.get(result_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Unknown result {result_id}.")
    return result


def _crop_region(buffer: np.ndarray, x: int, y: int, width: int, height: int) -> np.ndarray:
    # Same clipping rules as ChunkedImage.get_chunk
    if width <= 0 or height <= 0:
        raise errors.RegionOutOfRangeError(f"Chunk size must be positive, got {width}x{height}.")
    buffer_w, buffer_h = image_processing.dimensions(buffer)
    chunk = image_processing.allocate(width, height)
    x0, y0 = max(x, 0), max(y, 0)
    x1, y1 = min(x + width, buffer_w), min(y + height, buffer_h)
    if x0 < x1 and y0 < y1:
        chunk[y0 - y : y1 - y, x0 - x : x1 - x] = buffer[y0:y1, x0:x1]
    return chunk
