import uvicorn

from medtenancy.config import settings
from medtenancy.main import app  # noqa: F401

if __name__ == "__main__":
    uvicorn.run("medtenancy.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
