"""
Script to run the Recstore API with uvicorn.
"""
import os

import uvicorn

from recstore.config import settings

if __name__ == "__main__":
    # Auto-reload only in development
    is_development = os.getenv("ENVIRONMENT", "development").lower() == "development"

    print(f"\nRecstore API: http://{settings.host}:{settings.port}")
    print(f"API Docs:     http://{settings.host}:{settings.port}/docs\n")

    uvicorn.run(
        "recstore.main:app",
        host=settings.host,
        port=settings.port,
        reload=is_development,
        log_level=settings.log_level.lower()
    )
