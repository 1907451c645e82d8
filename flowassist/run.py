#!/usr/bin/env python3
"""
Quick runner for FlowAssist
===========================

Usage:
    python -m flowassist.run
    # or
    python flowassist/run.py
"""

import uvicorn

from flowassist.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    print("Starting FlowAssist...")
    print(f"API docs: http://localhost:{settings.port}/docs")
    print(f"Health:   http://localhost:{settings.port}/health")
    print()

    uvicorn.run(
        "flowassist.api:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.is_development
    )
