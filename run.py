import sys
import os
import uvicorn

if sys.platform == "win32":
    import asyncio
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

if __name__ == "__main__":
    host = os.environ.get("CHECKIN_HOST", "localhost")
    port = int(os.environ.get("CHECKIN_PORT", "8080"))
    uvicorn.run(
        "checkin_hub.server:app",
        host=host,
        port=port,
        reload=os.environ.get("CHECKIN_RELOAD", "false").lower() == "true",
        reload_dirs=["checkin_hub"],
        log_level=os.environ.get("CHECKIN_LOG_LEVEL", "info"),
    )
