"""
DataMarket Node
HTTP front of one marketplace deployment.

Every state-changing call is one atomic marketplace transition. The
acting identity travels in the X-Caller-Address header and must be
backed by a request signature (see auth.py); payments are explicit
`value` fields; settlement signatures cross as {v, r, s}.

Endpoints:
- GET  /health, /marketplace
- POST /users, /sellers, /deposits                    (supervisor)
- GET  /sellers, /sellers/{address}, /sellers/{address}/next
- POST /shops/{shop}/price|rate|open|close|data|withdraw   (shop owner)
- GET  /shops/{shop}, /shops/{shop}/data, /shops/{shop}/data/{index}
- POST /purchases, /escrows/{hash}/finalize|execute|refund|dispute|resolve
- GET  /escrows/{hash}, /escrows/{hash}/digest
- POST /subscriptions, /access
- GET  /subscriptions/{buyer}/{seller}, /balances/{address}, /events
- POST /webhooks, DELETE /webhooks/{id}                 (authenticated)
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from dotenv import load_dotenv

from datamarket import (
    ErrorCode,
    EscrowState,
    Marketplace,
    MarketplaceError,
    Signature,
    Unauthorized,
    ZERO_ADDRESS,
    __version__,
)
from datamarket.node.auth import RequestAuthenticator

# Load environment from working directory
ROOT_DIR = Path.cwd()
load_dotenv(ROOT_DIR / ".env")

# Configuration
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))


# === LOGGING ===
def setup_logging(log_dir: Path = ROOT_DIR / "logs"):
    log_dir.mkdir(exist_ok=True)

    formatter = logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    # Clear existing handlers
    root_logger.handlers = []

    file_handler = RotatingFileHandler(
        log_dir / "datamarket.log",
        maxBytes=10_000_000,
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    return logging.getLogger("datamarket.node")


logger = logging.getLogger("datamarket.node")


STATUS_CODES = {
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.SIGNATURE_INVALID: 401,
    ErrorCode.INVALID_AMOUNT: 400,
    ErrorCode.INSUFFICIENT_FUNDS: 402,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ALREADY_EXISTS: 409,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.SUBSCRIPTION_INVALID: 403,
    ErrorCode.INVALID_ADDRESS: 400,
    ErrorCode.INVALID_HASH: 400,
}


# === PYDANTIC MODELS ===

class SignatureBody(BaseModel):
    """Three-component recoverable signature."""
    v: int
    r: str
    s: str

    def to_signature(self) -> Signature:
        return Signature.from_dict(self.model_dump())


class RegisterUserRequest(BaseModel):
    address: str
    external_id: str


class RegisterShopRequest(BaseModel):
    seller: str
    info: str = ""


class DepositRequest(BaseModel):
    address: str
    amount: int


class ValueRequest(BaseModel):
    value: int


class DataRequest(BaseModel):
    pointer: str
    metadata: str = ""


class PointerRequest(BaseModel):
    pointer: str


class PurchaseRequest(BaseModel):
    """Request body for an escrowed per-item purchase."""
    seller: str
    pointer: str
    value: int

    class Config:
        json_schema_extra = {
            "example": {
                "seller": "0x5d1c1f0b0e3e5a1e0c2b8f2f1d6a3b9c4e7f8a21",
                "pointer": "DVZAPMBOOJHQKFQUUYCXKA9DMOLQABGKHSZCAPYLPQSQK9BGNGMOY9JHHNRRGNHGBUUPWYWJM9QNEISFI",
                "value": 50
            }
        }


class FinalizeRequest(BaseModel):
    signature: SignatureBody
    delivery_ref: Optional[str] = None


class ExecuteRequest(BaseModel):
    signature: SignatureBody


class ResolveRequest(BaseModel):
    award_to_seller: bool


class SubscribeRequest(BaseModel):
    seller: str
    duration_units: int
    value: int


class AccessRequest(BaseModel):
    seller: str
    pointer: str


class WebhookRequest(BaseModel):
    url: str
    name: Optional[str] = None
    filters: Dict[str, Any] = {}


def create_app(marketplace: Optional[Marketplace] = None) -> FastAPI:
    """
    Build the node application around a marketplace.

    Args:
        marketplace: Deployment to serve; built from environment if None
    """
    market = marketplace or Marketplace()
    get_caller = RequestAuthenticator(market)

    # === LIFESPAN ===
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await market.start()
        logger.info(f"DataMarket node serving {market.address}")
        logger.info(f"Supervisor: {market.owner}")

        yield

        await market.close()
        logger.info("Node shutdown complete")

    app = FastAPI(
        title="DataMarket Node",
        description="Decentralized data marketplace settlement protocol",
        version=__version__,
        lifespan=lifespan
    )
    app.state.marketplace = market

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        status = STATUS_CODES.get(exc.code, 400)
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code.value} ({exc.message})")
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": "bad_request", "message": str(exc)})

    # === PUBLIC ROUTES ===

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "marketplace": market.address,
            "webhooks": len(market.events.list_webhooks())
        }

    @app.get("/marketplace")
    async def marketplace_info():
        """Deployment identity clients need to build settlement digests."""
        return {
            "address": market.address,
            "supervisor": market.owner,
            "sentinel": ZERO_ADDRESS,
            "subscription_time_unit": market.subscriptions.time_unit,
            "settlement_timeout": market.escrow.settlement_timeout
        }

    # === REGISTRATION ===

    @app.post("/users")
    async def register_user(body: RegisterUserRequest, caller: str = Depends(get_caller)):
        user = await market.register_user(body.address, body.external_id, caller=caller)
        return user.to_dict()

    @app.post("/sellers")
    async def register_shop(body: RegisterShopRequest, caller: str = Depends(get_caller)):
        handle = await market.register_shop(body.seller, body.info, caller=caller)
        return handle.to_dict()

    @app.delete("/sellers/{address}")
    async def remove_shop(address: str, caller: str = Depends(get_caller)):
        node = await market.remove_shop(address, caller=caller)
        return {"message": "Seller removed", "seller": node.to_dict()}

    @app.post("/deposits")
    async def deposit(body: DepositRequest, caller: str = Depends(get_caller)):
        balance = await market.deposit(body.address, body.amount, caller=caller)
        return {"address": body.address, "balance": balance}

    # === DISCOVERY ===

    @app.get("/sellers")
    async def list_sellers():
        sellers = await market.list_sellers()
        return {"sellers": sellers, "count": len(sellers)}

    @app.get("/sellers/{address}")
    async def get_seller(address: str):
        node = await market.get_seller(address)
        if not node:
            raise HTTPException(status_code=404, detail={"error": "Seller not registered"})
        return node.to_dict()

    @app.get("/sellers/{address}/next")
    async def next_seller(address: str):
        return {"address": address, "next": await market.next_seller(address)}

    @app.get("/users/{address}")
    async def get_user(address: str):
        user = await market.get_user(address)
        if not user:
            raise HTTPException(status_code=404, detail={"error": "User not registered"})
        return user.to_dict()

    # === SHOPS ===

    @app.get("/shops/{shop}")
    async def get_shop(shop: str):
        record = await market.get_shop(shop)
        return {**record.to_dict(), "data_count": await market.get_data_list_size(shop)}

    @app.post("/shops/{shop}/price")
    async def set_price(shop: str, body: ValueRequest, caller: str = Depends(get_caller)):
        await market.set_price(shop, body.value, caller=caller)
        return (await market.get_shop(shop)).to_dict()

    @app.post("/shops/{shop}/rate")
    async def set_subscription_rate(shop: str, body: ValueRequest, caller: str = Depends(get_caller)):
        await market.set_subscription_rate(shop, body.value, caller=caller)
        return (await market.get_shop(shop)).to_dict()

    @app.post("/shops/{shop}/open")
    async def open_purchases(shop: str, caller: str = Depends(get_caller)):
        await market.set_purchase_open(shop, caller=caller)
        return (await market.get_shop(shop)).to_dict()

    @app.post("/shops/{shop}/close")
    async def close_purchases(shop: str, caller: str = Depends(get_caller)):
        await market.set_purchase_close(shop, caller=caller)
        return (await market.get_shop(shop)).to_dict()

    @app.post("/shops/{shop}/data")
    async def update_data(shop: str, body: DataRequest, caller: str = Depends(get_caller)):
        index = await market.update_data(shop, body.pointer, body.metadata, caller=caller)
        return {"index": index, "pointer": body.pointer}

    @app.post("/shops/{shop}/withdraw")
    async def withdraw_data(shop: str, body: PointerRequest, caller: str = Depends(get_caller)):
        await market.withdraw_data(shop, body.pointer, caller=caller)
        return {"pointer": body.pointer, "available": False}

    @app.get("/shops/{shop}/data")
    async def list_data(shop: str, available_only: bool = True):
        items = await market.list_data(shop, available_only)
        return {"items": [item.to_dict() for item in items], "count": len(items)}

    @app.get("/shops/{shop}/data/{index}")
    async def get_data(shop: str, index: int):
        return (await market.get_data(shop, index)).to_dict()

    @app.get("/shops/{shop}/availability")
    async def get_availability(shop: str, pointer: str):
        return {"pointer": pointer, "available": await market.get_data_availability(shop, pointer)}

    # === ESCROW ===

    @app.post("/purchases")
    async def purchase_data(body: PurchaseRequest, caller: str = Depends(get_caller)):
        record = await market.purchase_data(body.seller, body.pointer, caller=caller, value=body.value)
        return record.to_dict()

    @app.get("/escrows")
    async def list_escrows(buyer: Optional[str] = None, seller: Optional[str] = None, state: Optional[str] = None):
        records = await market.list_escrows(
            buyer=buyer,
            seller=seller,
            state=EscrowState(state) if state else None
        )
        return {"escrows": [r.to_dict() for r in records], "count": len(records)}

    @app.get("/escrows/{script_hash}")
    async def get_escrow(script_hash: str):
        return (await market.get_escrow(script_hash)).to_dict()

    @app.get("/escrows/{script_hash}/digest")
    async def get_digest(script_hash: str):
        digest = await market.settlement_digest(script_hash)
        return {"script_hash": script_hash, "digest": "0x" + digest.hex()}

    @app.post("/escrows/{script_hash}/finalize")
    async def finalize(script_hash: str, body: FinalizeRequest, caller: str = Depends(get_caller)):
        record = await market.finalize(
            script_hash,
            body.signature.to_signature(),
            caller=caller,
            delivery_ref=body.delivery_ref
        )
        return record.to_dict()

    @app.post("/escrows/{script_hash}/execute")
    async def execute(script_hash: str, body: ExecuteRequest, caller: str = Depends(get_caller)):
        record = await market.execute(script_hash, body.signature.to_signature(), caller=caller)
        return record.to_dict()

    @app.post("/escrows/{script_hash}/refund")
    async def refund(script_hash: str, caller: str = Depends(get_caller)):
        return (await market.refund(script_hash, caller=caller)).to_dict()

    @app.post("/escrows/{script_hash}/dispute")
    async def dispute(script_hash: str, caller: str = Depends(get_caller)):
        return (await market.dispute(script_hash, caller=caller)).to_dict()

    @app.post("/escrows/{script_hash}/resolve")
    async def resolve(script_hash: str, body: ResolveRequest, caller: str = Depends(get_caller)):
        record = await market.resolve_dispute(script_hash, body.award_to_seller, caller=caller)
        return record.to_dict()

    # === SUBSCRIPTIONS ===

    @app.post("/subscriptions")
    async def subscribe(body: SubscribeRequest, caller: str = Depends(get_caller)):
        entry = await market.subscribe(body.seller, body.duration_units, caller=caller, value=body.value)
        return entry.to_dict()

    @app.get("/subscriptions/{buyer}/{seller}")
    async def get_subscription(buyer: str, seller: str):
        entry = await market.get_subscription(buyer, seller)
        if not entry:
            return {"buyer": buyer, "seller": seller, "status": "none", "valid": False}
        return {
            **entry.to_dict(),
            "status": entry.status(market.clock()).value,
            "valid": await market.is_subscription_valid(buyer, seller)
        }

    @app.post("/access")
    async def purchase_by_subscription(body: AccessRequest, caller: str = Depends(get_caller)):
        item = await market.purchase_by_subscription(body.seller, body.pointer, caller=caller)
        return item.to_dict()

    # === BALANCES & EVENTS ===

    @app.get("/balances/{address}")
    async def get_balance(address: str):
        account = await market.get_account(address)
        return {**account, "balance": await market.get_balance(address)}

    @app.get("/events")
    async def get_events(
        name: Optional[str] = None,
        script_hash: Optional[str] = None,
        buyer: Optional[str] = None,
        seller: Optional[str] = None,
        limit: int = 100
    ):
        events = await market.get_events(name, script_hash, buyer, seller, limit)
        return {"events": [e.to_dict() for e in events], "count": len(events)}

    @app.post("/webhooks")
    async def add_webhook(body: WebhookRequest, caller: str = Depends(get_caller)):
        hook = market.events.add_webhook(body.url, body.name, filters=body.filters, owner=caller)
        return hook.to_dict()

    @app.delete("/webhooks/{webhook_id}")
    async def remove_webhook(webhook_id: str, caller: str = Depends(get_caller)):
        hook = market.events.get_webhook(webhook_id)
        if not hook:
            raise HTTPException(status_code=404, detail={"error": "Webhook not found"})
        if caller not in (hook.owner, market.owner):
            raise Unauthorized("Only the webhook owner or supervisor can remove it")

        market.events.remove_webhook(webhook_id)
        return {"message": "Webhook removed", "webhook_id": webhook_id}

    return app


def run():
    """Run the node with settings from the environment."""
    setup_logging()
    logger.info(f"DataMarket node starting on {HOST}:{PORT}")
    uvicorn.run(
        "datamarket.node.main:create_app",
        factory=True,
        host=HOST,
        port=PORT
    )


# === ENTRY POINT ===
if __name__ == "__main__":
    run()
