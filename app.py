#  app.py
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from fastapi import Depends, FastAPI, Header, Path, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from cache import LISTING_TTL, PLAY_TTL, QUEUE_TTL, RELEASES_TTL, ResponseCache, cache_key
from config import get_settings
from errors import InvalidRequest
from models import DirectDownload, ErrorResponse, PlayInfo
from scraper import Animepahe

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

response_cache = ResponseCache()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.service = Animepahe(get_settings())
    logger.info("Animepahe service started")
    try:
        yield
    finally:
        await app.state.service.stop()
        logger.info("Animepahe service stopped")


# Initialize FastAPI app
app = FastAPI(
    title="Animepahe Scraper API",
    description="API to resolve streaming sources and download links for animepahe episodes, and to proxy its airing, search, queue and release listings.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_methods=["GET"],
    allow_headers=["*"],
)


def get_service(request: Request) -> Animepahe:
    return request.app.state.service


def get_cache() -> ResponseCache:
    return response_cache


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    error = ErrorResponse(error=str(exc.detail), code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=error.model_dump(exclude_none=True))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}")
    error = ErrorResponse(error="Internal server error", code=500, details=str(exc))
    return JSONResponse(status_code=500, content=error.model_dump(exclude_none=True))


async def cached(request: Request, cache: ResponseCache, ttl: float, produce: Callable[[], Awaitable[Any]]) -> Any:
    key = cache_key(request.url.path, dict(request.query_params))
    hit = cache.get(key)
    if hit is not None:
        logger.debug(f"Cache hit: {key}")
        return hit
    result = await produce()
    cache.set(key, result, ttl)
    return result


def parse_flag(value: Optional[str], name: str, default: bool = True) -> bool:
    if value is None or value == "":
        return default
    lowered = value.strip().lower()
    if lowered in ("true", "1"):
        return True
    if lowered in ("false", "0"):
        return False
    raise InvalidRequest(f"Invalid value for {name}: use true, false, 1 or 0")


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    return {
        "message": "Animepahe Scraper API",
        "version": "1.0.0",
        "endpoints": {
            "play": "/api/play/{id}?episodeId={episode_session}&downloads={true|false}",
            "download_link": "/api/play/download-links?url={download_button_url}",
            "airing": "/api/airing?page={page}",
            "search": "/api/search?q={query}&page={page}",
            "queue": "/api/queue",
            "releases": "/api/{anime_id}/releases?sort={episode_desc|episode_asc}&page={page}",
        },
        "documentation": "/docs"
    }

# Resolve a download button to a direct file URL
@app.get(
    "/api/play/download-links",
    response_model=DirectDownload,
    responses={
        400: {"model": ErrorResponse, "description": "Missing url"},
        500: {"model": ErrorResponse, "description": "Download form could not be extracted"},
        503: {"model": ErrorResponse, "description": "File host unreachable or returned no redirect"},
    },
    summary="Resolve a download link",
    description="Follow an animepahe download button (pahe.win) through the kwik download form and return the direct file URL. Example: `?url=https://pahe.win/AbCd`"
)
async def get_download_link(
    url: Optional[str] = Query(None, description="Download button URL"),
    service: Animepahe = Depends(get_service),
):
    if not url or not url.strip():
        raise InvalidRequest("Url is required")
    return await service.get_download_link(url.strip())

# Streaming sources for one episode
@app.get(
    "/api/play/{id}",
    response_model=PlayInfo,
    responses={
        400: {"model": ErrorResponse, "description": "Missing episodeId or invalid downloads flag"},
        404: {"model": ErrorResponse, "description": "Anime or episode not found"},
        503: {"model": ErrorResponse, "description": "Animepahe unreachable or still blocked after a cookie refresh"},
    },
    summary="Get streaming sources for an episode",
    description="Resolve every resolution of an episode to its m3u8 manifest and direct mp4 URL. Set `downloads=false` to skip the download buttons."
)
async def get_play(
    request: Request,
    id: str = Path(..., description="Anime session id"),
    episodeId: Optional[str] = Query(None, description="Episode session id"),
    downloads: Optional[str] = Query(None, description="Include download links (true/false, 1/0)"),
    service: Animepahe = Depends(get_service),
    cache: ResponseCache = Depends(get_cache),
):
    if not episodeId:
        raise InvalidRequest("episodeId query parameter is required")
    include_downloads = parse_flag(downloads, "downloads")
    return await cached(
        request, cache, PLAY_TTL,
        lambda: service.get_streaming_links(id, episodeId, include_downloads=include_downloads),
    )

# Listings proxied from the animepahe API
@app.get(
    "/api/airing",
    responses={
        403: {"model": ErrorResponse, "description": "Provided cookies were rejected"},
        503: {"model": ErrorResponse, "description": "Animepahe unreachable"},
    },
    summary="Latest airing releases",
)
async def get_airing(
    request: Request,
    page: int = Query(1, ge=1, description="Page number"),
    cookies: Optional[str] = Header(None, alias="X-Cookies", description="Use these cookies instead of the stored ones"),
    service: Animepahe = Depends(get_service),
    cache: ResponseCache = Depends(get_cache),
):
    return await cached(request, cache, LISTING_TTL, lambda: service.get_airing(page, user_cookies=cookies))

@app.get(
    "/api/search",
    responses={
        400: {"model": ErrorResponse, "description": "Missing search query"},
        503: {"model": ErrorResponse, "description": "Animepahe unreachable"},
    },
    summary="Search anime",
    description="Example: `?q=frieren&page=1`"
)
async def search(
    request: Request,
    q: Optional[str] = Query(None, description="Search query"),
    page: int = Query(1, ge=1, description="Page number"),
    cookies: Optional[str] = Header(None, alias="X-Cookies", description="Use these cookies instead of the stored ones"),
    service: Animepahe = Depends(get_service),
    cache: ResponseCache = Depends(get_cache),
):
    if not q or not q.strip():
        raise InvalidRequest("Search query is required")
    return await cached(request, cache, LISTING_TTL, lambda: service.search(q, page, user_cookies=cookies))

@app.get(
    "/api/queue",
    responses={503: {"model": ErrorResponse, "description": "Animepahe unreachable"}},
    summary="Encoding queue",
)
async def get_queue(
    request: Request,
    cookies: Optional[str] = Header(None, alias="X-Cookies", description="Use these cookies instead of the stored ones"),
    service: Animepahe = Depends(get_service),
    cache: ResponseCache = Depends(get_cache),
):
    return await cached(request, cache, QUEUE_TTL, lambda: service.get_queue(user_cookies=cookies))

@app.get(
    "/api/{anime_id}/releases",
    responses={
        404: {"model": ErrorResponse, "description": "Anime not found"},
        503: {"model": ErrorResponse, "description": "Animepahe unreachable"},
    },
    summary="Episode releases of an anime",
    description="Example: `/api/<anime_session>/releases?sort=episode_asc&page=2`"
)
async def get_releases(
    request: Request,
    anime_id: str = Path(..., description="Anime session id"),
    sort: str = Query("episode_desc", pattern="^episode_(asc|desc)$", description="Sort order"),
    page: int = Query(1, ge=1, description="Page number"),
    cookies: Optional[str] = Header(None, alias="X-Cookies", description="Use these cookies instead of the stored ones"),
    service: Animepahe = Depends(get_service),
    cache: ResponseCache = Depends(get_cache),
):
    return await cached(
        request, cache, RELEASES_TTL,
        lambda: service.get_releases(anime_id, sort=sort, page=page, user_cookies=cookies),
    )
