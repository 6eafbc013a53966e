import logging

from dotenv import load_dotenv
from fastapi import FastAPI

from paysync.app.routes.billing import router as billing_router
from paysync.app.routes.webhooks import router as webhooks_router
from paysync.app.services.billing import get_prices, get_tax_rates, load_reference_data


load_dotenv()

logger = logging.getLogger("paysync")

app = FastAPI(title="paysync")

app.include_router(billing_router)
app.include_router(webhooks_router)


@app.on_event("startup")
def load_reference_tables() -> None:
    load_reference_data()
    logger.info("Reference data ready: %d tax rates, %d prices", len(get_tax_rates()), len(get_prices()))


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
