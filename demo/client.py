import asyncio
import logging
import os

from dotenv import load_dotenv

from x402_paywall.negotiator import PaymentNegotiator
from x402_paywall.sandbox import SandboxSigner

load_dotenv()
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

PRIVATE_KEY = os.getenv("PRIVATE_KEY")
if PRIVATE_KEY and not PRIVATE_KEY.startswith("0x"):
    raise SystemExit("PRIVATE_KEY must start with 0x")

API_URL = os.getenv("API_URL", "http://localhost:3000")
ENDPOINT = f"{API_URL}/api/premium"


async def main():
    signer = SandboxSigner(PRIVATE_KEY) if PRIVATE_KEY else SandboxSigner.generate()
    print("Paying from:", signer.address)

    async with PaymentNegotiator(signer) as negotiator:
        negotiator.subscribe(lambda old, new: print(f"  {old.value} -> {new.value}"))
        outcome = await negotiator.run(ENDPOINT)

    print("State:", outcome.state.value)
    if outcome.granted:
        print("Received", len(outcome.response.content), "bytes")
        if outcome.receipt is not None:
            print("Transaction:", outcome.receipt.transaction)
    else:
        print("Error:", outcome.error)


if __name__ == "__main__":
    asyncio.run(main())
