from contextlib import asynccontextmanager
from fastapi import FastAPI
import logging
import uvicorn

# Use relative imports
from . import schemas, logic, config
from order_service.errors import InternalError, register_exception_handlers

# Basic logging setup
logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Pricing Service starting up...")
    logger.info(f"Listening on {config.APP_HOST}:{config.APP_PORT}")
    yield
    logger.info("Pricing Service shutting down...")


app = FastAPI(
    title="Pricing Service",
    description="Calculates delivery costs from a service's pricing configuration.",
    version="0.2.0",
    lifespan=lifespan,
)
# Same {success, error} envelope as the order service, PricingError included
register_exception_handlers(app)


@app.get("/health", tags=["Monitoring"], summary="Health Check")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}

@app.post(
    "/calculate_price",
    response_model=schemas.PriceCalculationResponse,
    response_model_by_alias=True,
    tags=["Pricing"],
    summary="Calculate Delivery Cost"
)
async def calculate_price_endpoint(request_data: schemas.PriceCalculationRequest):
    """
    Receives a pricing configuration snapshot and order details and returns
    the cost breakdown. Pricing rule violations are reported, never guessed.
    """
    logger.info(f"Received price calculation request ({request_data.pricing_config.distance_mode.value})")
    try:
        return logic.calculate_price(request_data)
    except logic.PricingError:
        raise
    except Exception as e:
        # Log the exception for debugging
        logger.exception(f"Error calculating price: {e}")
        raise InternalError("An unexpected error occurred during price calculation.") from e


if __name__ == "__main__":
    uvicorn.run("pricing_service.main:app", host=config.APP_HOST, port=config.APP_PORT)
