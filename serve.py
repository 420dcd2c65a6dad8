#!/usr/bin/env python3
"""
Business Plan Co-Editing Service - Main Server
"""

import uvicorn

from bizplan.app import app
from bizplan.config import config


def main():
    """Start the FastAPI server"""
    print("=" * 60)
    print("🚀 BUSINESS PLAN CO-EDITING SERVICE")
    print("=" * 60)
    print(f"🌐 Starting server on {config.HOST}:{config.PORT}")
    print(f"🔧 Environment: {config.ENV}")
    print(f"📚 API Documentation: http://{config.HOST}:{config.PORT}/docs")
    print("=" * 60)

    if config.ENV == "development":
        # import string so auto-reload can re-import the app
        uvicorn.run(
            "bizplan.app:app",
            host=config.HOST,
            port=config.PORT,
            reload=True,
            access_log=True,
            log_level="info",
        )
    else:
        uvicorn.run(
            app,
            host=config.HOST,
            port=config.PORT,
            reload=False,
            access_log=False,
            log_level="warning",
        )


if __name__ == "__main__":
    main()
