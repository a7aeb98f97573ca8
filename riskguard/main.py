import logging

from fastapi import FastAPI

from riskguard.api import endpoints
from riskguard.config import Config

# Configure logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=Config.API_TITLE,
    description=Config.API_DESCRIPTION,
    version=Config.API_VERSION,
)
app.include_router(endpoints.router)


@app.on_event("startup")
async def startup_event():
    """Restore a saved ensemble configuration if there is one"""
    logger.info("Starting risk service...")

    if endpoints.services.ensemble.load_model(Config.SAVED_MODELS_PATH):
        logger.info("Saved ensemble configuration loaded")
    else:
        logger.info("Using the fixed-weight ensemble")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=Config.API_HOST, port=Config.API_PORT)
