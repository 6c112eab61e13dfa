from fastapi import APIRouter, Depends, HTTPException, Query

from picshelf.api.schemas import ImagePage, SeriesPage
from picshelf.services.catalog_service import CatalogStore, get_store

router = APIRouter(prefix="/series", tags=["series"])


@router.get("/", response_model=SeriesPage)
async def list_series(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    store: CatalogStore = Depends(get_store),
):
    items, total = await store.list_series(page, limit)
    return SeriesPage(items=items, total=total, page=page, limit=limit)


@router.get("/search", response_model=SeriesPage)
async def search_series(
    q: str = Query(min_length=1),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    store: CatalogStore = Depends(get_store),
):
    items, total = await store.search_series_by_name(q, page, limit)
    return SeriesPage(items=items, total=total, page=page, limit=limit)


@router.get("/{series_id}/images", response_model=ImagePage)
async def series_images(
    series_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=100, ge=1, le=1000),
    store: CatalogStore = Depends(get_store),
):
    if await store.get_series_by_id(series_id) is None:
        raise HTTPException(status_code=404, detail="Series not found")
    items, total = await store.list_images_by_series(series_id, page, limit)
    return ImagePage(items=items, total=total, page=page, limit=limit)
