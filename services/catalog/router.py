"""
services/catalog/router.py
Public scrap category tree and current rates (Redis-cached).
"""

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import ScrapCategory, ScrapRate
from shared.schemas.schemas import ScrapCategoryResponse, ScrapRateResponse

router = APIRouter(prefix="/catalog", tags=["Catalog"])

RATES_CACHE_KEY = "catalog:rates"
CATEGORIES_CACHE_KEY = "catalog:categories"


@router.get("/categories", response_model=list[ScrapCategoryResponse])
async def list_categories(
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Active categories, parents before their children."""
    cache = RedisCache(redis)
    cached = await cache.get(CATEGORIES_CACHE_KEY)
    if cached is not None:
        return cached

    result = await db.execute(
        select(ScrapCategory)
        .where(ScrapCategory.is_active == True)  # noqa: E712
        .order_by(ScrapCategory.parent_id.is_not(None), ScrapCategory.name)
    )
    categories = [
        ScrapCategoryResponse.model_validate(c).model_dump(mode="json")
        for c in result.scalars()
    ]
    await cache.set(CATEGORIES_CACHE_KEY, categories)
    return categories


@router.get("/rates", response_model=list[ScrapRateResponse])
async def list_rates(
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Active price per kg for every category that has one."""
    cache = RedisCache(redis)
    cached = await cache.get(RATES_CACHE_KEY)
    if cached is not None:
        return cached

    result = await db.execute(
        select(ScrapRate)
        .where(ScrapRate.is_active == True)  # noqa: E712
        .order_by(ScrapRate.category_id)
    )
    rates = [ScrapRateResponse.model_validate(r).model_dump(mode="json") for r in result.scalars()]
    await cache.set(RATES_CACHE_KEY, rates)
    return rates
