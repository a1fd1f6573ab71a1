import dataclasses
import logging
import os

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from x402_paywall.config import ServerConfig
from x402_paywall.facilitator import FacilitatorClient, facilitator_config_from_server
from x402_paywall.guard import BytesResource, FileResource, ResourceGuard
from x402_paywall.http import fastapi_payment_middleware

load_dotenv()
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

PORT = int(os.getenv("PORT", "3000"))

config = ServerConfig.from_env()
facilitator = FacilitatorClient(facilitator_config_from_server(config))
if config.resource_path:
    resource = FileResource(config.resource_path)
else:
    resource = BytesResource(b"demo video bytes")

app = FastAPI()

middleware = fastapi_payment_middleware(
    {
        "GET /api/premium": ResourceGuard(config, facilitator, resource),
        "GET /api/premium-data": ResourceGuard(
            dataclasses.replace(config, mime_type="application/json"), facilitator
        ),
    }
)


@app.middleware("http")
async def x402_middleware(request, call_next):
    return await middleware(request, call_next)


@app.on_event("shutdown")
async def close_facilitator():
    await facilitator.aclose()


@app.get("/api/premium-data")
async def premium_data():
    return {
        "message": "Success! You've accessed the premium data.",
        "data": {
            "secret": "This is protected content behind a paywall",
        },
    }


@app.get("/")
async def root():
    return {
        "message": "x402 Demo Server",
        "endpoints": {
            "free": ["/", "/health"],
            "protected": [
                {"path": "/api/premium", "amount": config.amount, "mimeType": config.mime_type},
                {"path": "/api/premium-data", "amount": config.amount, "mimeType": "application/json"},
            ],
        },
    }


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT)
