import logging
from typing import Optional
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from portal.api import announcements, realtime
from portal.config import settings
from portal.database import engine, Base, AsyncSessionLocal
from portal.exceptions import InvalidAudienceError, NotFoundError, UploadError, TransportError
from portal.middleware.logging import setup_logging, add_logging_middleware
from portal.realtime.feed import ChangeFeed
from portal.realtime.subscriptions import SubscriptionManager
from portal.services.announcements import AnnouncementStore, Uploader
from portal.services.cloudinary import upload_attachment

# Initialize FastAPI app
app = FastAPI(
    title="School Portal Announcements API",
    description="Targeted announcements for owners, principals, teachers and students, delivered in real time",
    version="1.0.0",
    docs_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
add_logging_middleware(app)

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


def init_broadcast(
    app: FastAPI,
    db_engine: AsyncEngine,
    session_factory: async_sessionmaker,
    uploader: Optional[Uploader] = None,
) -> None:
    """Wire the change feed, the announcement store and the subscription manager onto the app."""
    feed = ChangeFeed()
    store = AnnouncementStore(feed, session_factory, uploader or upload_attachment)
    app.state.engine = db_engine
    app.state.feed = feed
    app.state.store = store
    app.state.subscriptions = SubscriptionManager(store, feed)


# Exception handlers
@app.exception_handler(InvalidAudienceError)
async def invalid_audience_handler(request: Request, exc: InvalidAudienceError):
    return JSONResponse(status_code=422, content={"detail": exc.detail})

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Announcement not found"})

@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    logger.error(f"Attachment upload failed: {exc.detail}")
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": exc.detail})

@app.exception_handler(TransportError)
async def transport_error_handler(request: Request, exc: TransportError):
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": exc.detail})

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please try again later."},
    )

# Create database tables and the realtime machinery
@app.on_event("startup")
async def startup():
    if getattr(app.state, "store", None) is None:
        init_broadcast(app, engine, AsyncSessionLocal)
    async with app.state.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created or verified")

@app.on_event("shutdown")
async def shutdown():
    app.state.subscriptions.close_all()

# Include routers
app.include_router(announcements.router, prefix="/api", tags=["Announcements"])
app.include_router(realtime.router, tags=["Realtime"])

# Custom OpenAPI schema for documentation
@app.get("/api/docs", include_in_schema=False)
async def custom_swagger_ui_html():
    return get_swagger_ui_html(
        openapi_url="/api/openapi.json",
        title="School Portal Announcements API Documentation",
        swagger_ui_parameters={"defaultModelsExpandDepth": -1},
    )

@app.get("/api/openapi.json", include_in_schema=False)
async def get_openapi_endpoint():
    return get_openapi(
        title="School Portal Announcements API",
        version="1.0.0",
        description="API for targeted school announcements",
        routes=app.routes,
    )

@app.get("/", tags=["Root"])
async def root():
    return {"message": "Welcome to the School Portal Announcements API. Visit /api/docs for documentation."}

# Run the server
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("portal.main:app", host="0.0.0.0", port=8000, reload=True)
