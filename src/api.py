"""
HTTP API - Health probes, cluster status and event streaming.

A read-mostly FastAPI surface over the controller: liveness and readiness
probes, cluster summaries, a manual reconcile trigger and a Server-Sent
Events stream of pass outcomes.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from clusters import CLUSTER_KINDS
from config import APIConfig
from errors import ReconcileError
from events import ClusterEvent, EventBus
from models import ClusterKey

logger = logging.getLogger(__name__)


class ClusterSummary(BaseModel):
    """Response model for one cluster."""

    kind: str
    namespace: str
    name: str
    replicas: int = 0
    ready_replicas: int = 0
    running: bool = False
    running_reason: Optional[str] = None
    reconciled_reason: Optional[str] = None
    last_result: Optional[str] = None
    last_reconciled_at: Optional[str] = None


class ClusterDetail(ClusterSummary):
    """Response model for one cluster including its raw status."""

    status: Dict[str, Any] = {}


class ReconcileTriggered(BaseModel):
    message: str
    cluster: str


class APIServer:
    """
    Serves the operator's HTTP API with uvicorn.

    The controller and event bus are injected so the app can be built and
    tested without a running platform.
    """

    def __init__(
        self,
        controller,
        event_bus: Optional[EventBus] = None,
        config: Optional[APIConfig] = None,
        watcher=None,
    ):
        self.controller = controller
        self.event_bus = event_bus
        self.config = config or APIConfig()
        self.watcher = watcher
        self.server: Optional[uvicorn.Server] = None
        self.app = self.create_app()

    def create_app(self) -> FastAPI:
        """
        Build the FastAPI app and its routes.

        Routes:
        - Probes: GET /healthz, GET /readyz
        - Clusters: GET /api/v1/clusters, GET /api/v1/clusters/{kind}/{namespace}/{name}
        - Reconciliation: POST /api/v1/clusters/{kind}/{namespace}/{name}/reconcile
        - Events: GET /api/v1/events (SSE)
        """
        app = FastAPI(
            title="EMQX Operator API",
            description="Status and control surface for EMQX broker clusters",
            version="1.0.0",
        )
        if self.config.cors_enabled:
            app.add_middleware(
                CORSMiddleware,
                allow_origins=self.config.cors_origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )

        @app.get("/healthz")
        async def healthz():
            """Liveness probe."""
            return {"status": "ok", "service": "emqx-operator"}

        @app.get("/readyz")
        async def readyz():
            """Readiness probe: the controller workers are running."""
            if not self.controller.running:
                raise HTTPException(status_code=503, detail="Controller not running")
            if self.watcher is not None and not self.watcher.running:
                raise HTTPException(status_code=503, detail="Watches not running")
            return {"status": "ready"}

        # ==================== Cluster Endpoints ====================

        @app.get("/api/v1/clusters", response_model=List[ClusterSummary])
        async def list_clusters(namespace: Optional[str] = None):
            """List every cluster with its readiness summary."""
            try:
                clusters = await self.controller.list_clusters(namespace)
            except ReconcileError as e:
                logger.error(f"Error listing clusters: {e}")
                raise HTTPException(status_code=502, detail=e.message)
            return [ClusterSummary(**self.controller.describe(c)) for c in clusters]

        @app.get(
            "/api/v1/clusters/{kind}/{namespace}/{name}",
            response_model=ClusterDetail,
        )
        async def get_cluster(kind: str, namespace: str, name: str):
            """Get one cluster's summary and full status."""
            key = self._key(kind, namespace, name)
            try:
                cluster = await self.controller.get_cluster(key)
            except ReconcileError as e:
                logger.error(f"Error reading {key}: {e}")
                raise HTTPException(status_code=502, detail=e.message)
            if cluster is None:
                raise HTTPException(status_code=404, detail="Cluster not found")
            return ClusterDetail(**self.controller.describe(cluster))

        @app.post(
            "/api/v1/clusters/{kind}/{namespace}/{name}/reconcile",
            response_model=ReconcileTriggered,
            status_code=202,
        )
        async def trigger_reconciliation(kind: str, namespace: str, name: str):
            """Manually trigger reconciliation for a cluster."""
            key = self._key(kind, namespace, name)
            await self.controller.trigger_reconciliation(key)
            return ReconcileTriggered(message="Reconciliation triggered", cluster=str(key))

        # ==================== Event Streaming Endpoints ====================

        @app.get("/api/v1/events")
        async def stream_events(
            namespace: Optional[str] = None, name: Optional[str] = None
        ):
            """SSE stream of pass outcome events, optionally filtered."""
            if not self.event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            def filter_fn(event: ClusterEvent) -> bool:
                if namespace and event.namespace != namespace:
                    return False
                if name and event.name != name:
                    return False
                return True

            subscriber_id, subscription = await self.event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self.event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

        return app

    @staticmethod
    def _key(kind: str, namespace: str, name: str) -> ClusterKey:
        if kind not in CLUSTER_KINDS:
            raise HTTPException(status_code=404, detail=f"Unknown cluster kind: {kind}")
        return ClusterKey(kind, namespace, name)

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP API on {self.config.host}:{self.config.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True
