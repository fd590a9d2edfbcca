#!/usr/bin/env python3
"""
Local development server for the telemetry ingestion API.
Settings are read from the environment or a .env file.
"""

import os
import sys
from pathlib import Path

# Add src to Python path
current_dir = Path(__file__).parent
src_dir = current_dir / "src"
sys.path.insert(0, str(src_dir))

# Local SQLite database unless DATABASE_URL / Supabase settings are provided
os.environ.setdefault('ENVIRONMENT', 'development')
if not os.getenv('DATABASE_URL') and not os.getenv('SUPABASE_PROJECT_REF'):
    os.environ['DATABASE_URL'] = f"sqlite:///{current_dir / 'telemetry-dev.db'}"

if __name__ == "__main__":
    import uvicorn
    from telemetry_ingest.infrastructure.db import init_db

    init_db()
    print("Starting telemetry ingestion API")
    print("Docs: http://localhost:8000/docs")
    print("Health: http://localhost:8000/health")
    print("Press Ctrl+C to stop\n")

    uvicorn.run(
        "telemetry_ingest.api.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
        reload_dirs=[str(src_dir)],
    )
