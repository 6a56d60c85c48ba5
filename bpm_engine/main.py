"""Main FastAPI application for the BPM workflow core."""

from .config import load_config
from .factory import create_app

config = load_config()

# Create FastAPI application
app = create_app(config)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("bpm_engine.main:app", **config.get_uvicorn_config())
