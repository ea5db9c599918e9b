from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from src.domain.rate_limiter import RateLimiter
from src.routers import (
    fulfillment,
    internal_fulfillment,
    webhooks,
)

app = FastAPI(title="Field Service Fulfillment", version="0.1.0")
app.state.rate_limiter = RateLimiter()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(fulfillment.router)
app.include_router(webhooks.router)
app.include_router(internal_fulfillment.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "fieldservice-fulfillment"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
