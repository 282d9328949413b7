#!/usr/bin/env python3
"""
HMA Option Monitor - Main Entry Point
Web server for the monitoring engine.
"""
import uvicorn

from src.app import app
from src.config import settings

if __name__ == "__main__":
    print("Starting HMA Option Monitor...")
    print(f"API Docs: http://localhost:{settings.APP_PORT}/docs")
    print("Press Ctrl+C to stop.")
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=settings.APP_PORT,
        reload=False
    )
