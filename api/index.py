"""
Vercel serverless function entry point for the commerce gateway.
This file is detected by Vercel and exposes the ASGI application.
"""
import sys
from pathlib import Path

# The gateway package lives at the repository root
sys.path.insert(0, str(Path(__file__).parent.parent))

from crm_gateway.main import app

handler = app
