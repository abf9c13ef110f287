"""
Clinic Workflow Automation API entry point
"""
import os
import logging
import uvicorn
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from clinic_automation.api import create_app
from clinic_automation.config import EngineSettings


if __name__ == "__main__":
    settings = EngineSettings.from_env(dotenv=False)
    reload = os.getenv("API_RELOAD", "false").lower() == "true"

    if reload:
        # development mode
        uvicorn.run(
            "clinic_automation.api:create_app",
            factory=True,
            host=settings.api_host,
            port=settings.api_port,
            reload=True,
            log_level="info"
        )
    else:
        uvicorn.run(
            create_app(settings),
            host=settings.api_host,
            port=settings.api_port,
            log_level="info"
        )
