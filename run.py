"""
MEDORA Triage Server — Entry Point

    python run.py             # serves medora.app:app on $PORT (default 8080)
"""
import platform

import uvicorn

from medora import settings

if __name__ == "__main__":
    options = {"host": "0.0.0.0", "port": settings.PORT, "log_level": "info"}
    # uvloop is unavailable on Windows
    if platform.system() == "Windows":
        options["loop"] = "asyncio"
    uvicorn.run("medora.app:app", **options)
