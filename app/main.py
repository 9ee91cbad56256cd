import logging

from app.config import settings

# Configure basic logging
logging.basicConfig(level=settings.log_level.upper(), format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

from app.api import app # noqa: E402,F401 Import the FastAPI app instance from api
