"""Server entry point for the video transcript pipeline API.

Application logic lives in src.api.main; this module only runs it.
"""

from src.api.main import app

__all__ = ["app"]

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.main:app", host="127.0.0.1", port=8030, reload=True)
