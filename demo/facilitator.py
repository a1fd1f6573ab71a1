"""Local facilitator for the demo server: FACILITATOR_URL=http://localhost:4020"""

import logging
import os

import uvicorn
from dotenv import load_dotenv

from x402_paywall.sandbox import create_facilitator_app

load_dotenv()
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

app = create_facilitator_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("FACILITATOR_PORT", "4020")))
