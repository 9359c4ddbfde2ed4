from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import uvicorn

from config.settings import settings
from core.database import engine, Base
from api.routes import hosts, attempts, executions, channels

# Import all models to ensure they are registered with SQLAlchemy
from modules.users.models import User
from modules.hosts.models import Host
from modules.attempts.models import Task, WorkAttempt
from modules.executions.models import ExecutionRecord

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    print("🚀 Starting Sandbox Provisioner...")
    print(f"📊 Project: {settings.PROJECT_NAME} v{settings.VERSION}")

    print("📁 Creating database tables...")
    Base.metadata.create_all(bind=engine)
    print("✅ Database tables created successfully")

    print("📁 Script directories:")
    print(f"   - Templates: {settings.script_templates_directory.absolute()}")
    print(f"   - Work dir: {settings.script_work_directory.absolute()}")
    print(f"⚙️  Chain dispatcher: {settings.CHAIN_DISPATCHER}")
    print("✅ Application ready")

    yield

    # Shutdown
    print("👋 Shutting down Sandbox Provisioner...")

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Provisions remote hosts and per-task sandbox workspaces through tracked script chains",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(hosts.router, prefix=settings.API_PREFIX, tags=["hosts"])
app.include_router(attempts.router, prefix=settings.API_PREFIX, tags=["attempts"])
app.include_router(executions.router, prefix=settings.API_PREFIX, tags=["executions"])
app.include_router(channels.router, prefix=settings.API_PREFIX, tags=["channels"])

@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": settings.PROJECT_NAME,
        "version": settings.VERSION
    }

@app.get("/config")
async def get_config():
    """Get application configuration (safe version without secrets)"""
    return settings.to_dict()

@app.get("/api")
async def api_info():
    """API information endpoint"""
    return {
        "name": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "endpoints": {
            "hosts": f"{settings.API_PREFIX}/hosts",
            "tasks": f"{settings.API_PREFIX}/tasks",
            "attempts": f"{settings.API_PREFIX}/attempts",
            "executions": f"{settings.API_PREFIX}/executions",
            "channels": f"{settings.API_PREFIX}/channels/{{channel}}/events"
        },
        "documentation": "/docs"
    }

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.LOG_LEVEL.lower()
    )
