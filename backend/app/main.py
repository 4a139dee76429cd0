"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import messages, ops
from app.api.errors import install_error_handlers
from app.api.openapi import custom_openapi
from app.domain.messaging.sockets import MessagingNamespace
from app.domain.messaging.store import ensure_schema
from app.infra import postgres
from app.obs import init as obs_init
from app.obs import tracing
from app.settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
	if settings.message_store_backend == "postgres":
		pool = await postgres.init_pool()
		await ensure_schema(pool)
	try:
		yield
	finally:
		tracing.shutdown_tracing()
		await postgres.close_pool()


app = FastAPI(title="Sehra Messaging", lifespan=lifespan)
custom_openapi(app)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True.
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
messaging_namespace = MessagingNamespace()
sio.register_namespace(messaging_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.include_router(messages.router, tags=["messages"])
app.include_router(ops.router, tags=["ops"])
