"""
ConsultPilot Server — Entry Point
"""
import platform
import uvicorn

from consultpilot import settings

if __name__ == "__main__":
    port = settings.PORT

    if platform.system() == "Windows":
        uvicorn.run("consultpilot.app:app", host="0.0.0.0", port=port, log_level="info", loop="asyncio")
    else:
        uvicorn.run("consultpilot.app:app", host="0.0.0.0", port=port, log_level="info")
