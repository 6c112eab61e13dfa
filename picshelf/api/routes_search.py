import asyncio

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile

from picshelf.api.schemas import ImageSearchResult
from picshelf.services.catalog_service import CatalogStore, get_store
from picshelf.services.hashing import perceptual_hash
from picshelf.services.imaging import DECODE_ERRORS, decode_image

router = APIRouter(prefix="/search", tags=["search"])


def _hash_upload(data: bytes) -> str:
    image = decode_image(data)
    try:
        return perceptual_hash(image)
    finally:
        image.close()


@router.post("/image", response_model=ImageSearchResult)
async def search_by_image(
    file: UploadFile = File(...),
    limit: int = Query(default=20, ge=1, le=200),
    store: CatalogStore = Depends(get_store),
):
    data = await file.read()
    try:
        phash = await asyncio.to_thread(_hash_upload, data)
    except DECODE_ERRORS:
        raise HTTPException(status_code=400, detail="Uploaded file is not a readable image")
    matches = await store.find_images_by_perceptual_hash(phash, limit)
    return ImageSearchResult(perceptual_hash=phash, matches=matches)
