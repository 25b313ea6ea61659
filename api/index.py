"""
Vercel Serverless Entry Point for HubSync
Uses Mangum to adapt FastAPI (ASGI) for serverless environments.
"""

import sys
import os

# Add the parent directory to the path so we can import from the main app
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app

from mangum import Mangum

# Lifespan runs per cold start so configuration and clients are loaded
handler = Mangum(app, lifespan="auto")
