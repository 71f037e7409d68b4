"""
epochsettle/api.py

Admin HTTP API for a distributor process.

Lets operators trigger a distribution for an explicit range, preview a
calculation, inspect statuses, the ledger commitment and the audit log,
and scrape Prometheus metrics.
"""

import json
import logging
import time
import trio
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from urllib.parse import parse_qs, urlparse

from .blockchain.batches import EpochRange
from .errors import InsufficientData, NotEligible, SettlementError, UpstreamUnavailable, classify_error
from .metrics import SettlementMetrics
from .protocol.status_store import DistributionPhase

if TYPE_CHECKING:
    from .protocol.coordinator import DistributionCoordinator

logger = logging.getLogger("epochsettle.api")

API_VERSION = "0.1.0"


@dataclass
class Request:
    """HTTP request representation."""
    method: str
    path: str
    query: Dict[str, List[str]]
    headers: Dict[str, str]
    body: bytes
    path_params: Dict[str, str] = field(default_factory=dict)

    def json_body(self) -> dict:
        """Parsed JSON object body; raises ValueError when missing or malformed."""
        if not self.body:
            raise ValueError("Request body required")
        try:
            data = json.loads(self.body)
        except json.JSONDecodeError:
            raise ValueError("Invalid JSON")
        if not isinstance(data, dict):
            raise ValueError("JSON object expected")
        return data


@dataclass
class Response:
    """HTTP response representation."""
    status: int
    headers: Dict[str, str]
    body: bytes

    @classmethod
    def json(cls, data: Any, status: int = 200) -> "Response":
        """Create JSON response."""
        body = json.dumps(data, indent=2).encode("utf-8")
        return cls(
            status=status,
            headers={"Content-Type": "application/json"},
            body=body,
        )

    @classmethod
    def text(cls, text: str, status: int = 200, content_type: str = "text/plain") -> "Response":
        """Create text response."""
        return cls(
            status=status,
            headers={"Content-Type": content_type},
            body=text.encode("utf-8"),
        )

    @classmethod
    def error(cls, message: str, status: int = 400) -> "Response":
        """Create error response."""
        return cls.json({"error": message}, status=status)


def _range_from_body(request: Request) -> EpochRange:
    body = request.json_body()
    if "from_block" not in body or "to_block" not in body:
        raise ValueError("from_block and to_block are required")
    try:
        return EpochRange(int(body["from_block"]), int(body["to_block"]))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid range: {e}")


def _error_status(error: SettlementError) -> int:
    if isinstance(error, NotEligible):
        return 409
    if isinstance(error, InsufficientData):
        return 422
    if isinstance(error, UpstreamUnavailable):
        return 502
    return 500


class SettlementAPI:
    """
    Admin HTTP server for the settlement engine.

    Usage:
        coordinator = DistributionCoordinator.from_config(config, gateway, view)
        api = SettlementAPI(coordinator, host="0.0.0.0", port=8080)

        async with trio.open_nursery() as nursery:
            nursery.start_soon(coordinator.run)
            nursery.start_soon(api.start)
    """

    def __init__(
        self,
        coordinator: "DistributionCoordinator",
        host: str = "127.0.0.1",
        port: int = 8080,
        metrics: Optional[SettlementMetrics] = None,
    ):
        """
        Initialize admin API server.

        Args:
            coordinator: Coordinator whose store, audit log and gateway are exposed
            host: Host to bind to (default: localhost)
            port: Port to listen on (default: 8080)
            metrics: Metrics collector; defaults to the coordinator's
        """
        self.coordinator = coordinator
        self.store = coordinator.store
        self.audit = coordinator.audit
        self.host = host
        self.port = port
        self.metrics = metrics or coordinator.metrics or SettlementMetrics(self.store)

        self._running = False
        self._start_time = time.time()

        self._routes: Dict[Tuple[str, str], Callable] = {
            ("GET", "/"): self._handle_root,
            ("GET", "/health"): self._handle_health,
            ("POST", "/distributions"): self._handle_trigger,
            ("GET", "/distributions"): self._handle_list,
            ("GET", "/distributions/{epoch_id}"): self._handle_get,
            ("GET", "/summary"): self._handle_summary,
            ("POST", "/calculate"): self._handle_calculate,
            ("GET", "/contract/{epoch_id}"): self._handle_contract,
            ("POST", "/cleanup"): self._handle_cleanup,
            ("GET", "/audit"): self._handle_audit,
            ("GET", "/metrics"): self._handle_metrics,
        }

    async def start(self) -> None:
        """Start the API server."""
        if self._running:
            logger.warning("API server already running")
            return

        self._running = True
        logger.info(f"Starting admin API on {self.host}:{self.port}")

        try:
            await trio.serve_tcp(self._handle_connection, self.port, host=self.host)
        except Exception as e:
            logger.error(f"API server error: {e}")
            self._running = False
            raise

    async def _handle_connection(self, stream: trio.SocketStream) -> None:
        """Handle incoming TCP connection."""
        try:
            request = await self._read_request(stream)
            if not request:
                return
            response = await self._route_request(request)
            await self._send_response(stream, response)

        except Exception as e:
            logger.error(f"Connection error: {e}")
            try:
                await self._send_response(stream, Response.error(str(e), status=500))
            except trio.BrokenResourceError:
                logger.debug("Client went away before the error response")
        finally:
            await stream.aclose()

    async def _read_request(self, stream: trio.SocketStream) -> Optional[Request]:
        """Read and parse HTTP request."""
        try:
            data = b""
            while b"\r\n\r\n" not in data:
                chunk = await stream.receive_some(4096)
                if not chunk:
                    return None
                data += chunk

            header_end = data.index(b"\r\n\r\n")
            header_data = data[:header_end].decode("utf-8")
            body = data[header_end + 4:]

            lines = header_data.split("\r\n")
            request_line = lines[0].split(" ")
            method = request_line[0]
            path_with_query = request_line[1] if len(request_line) > 1 else "/"

            parsed = urlparse(path_with_query)
            headers = {}
            for line in lines[1:]:
                if ":" in line:
                    key, value = line.split(":", 1)
                    headers[key.strip().lower()] = value.strip()

            content_length = int(headers.get("content-length", 0))
            while len(body) < content_length:
                chunk = await stream.receive_some(4096)
                if not chunk:
                    break
                body += chunk

            return Request(
                method=method,
                path=parsed.path,
                query=parse_qs(parsed.query),
                headers=headers,
                body=body[:content_length] if content_length else body,
            )

        except Exception as e:
            logger.error(f"Error reading request: {e}")
            return None

    async def _send_response(self, stream: trio.SocketStream, response: Response) -> None:
        """Send HTTP response."""
        status_text = {
            200: "OK",
            201: "Created",
            400: "Bad Request",
            404: "Not Found",
            409: "Conflict",
            422: "Unprocessable Entity",
            500: "Internal Server Error",
            502: "Bad Gateway",
        }.get(response.status, "Unknown")

        lines = [f"HTTP/1.1 {response.status} {status_text}"]

        response.headers["Content-Length"] = str(len(response.body))
        response.headers["Connection"] = "close"
        response.headers["Server"] = f"epochsettle/{API_VERSION}"

        for key, value in response.headers.items():
            lines.append(f"{key}: {value}")

        lines.append("")
        header_bytes = "\r\n".join(lines).encode("utf-8") + b"\r\n"

        await stream.send_all(header_bytes + response.body)

    async def _route_request(self, request: Request) -> Response:
        """Route request to appropriate handler."""
        handler = self._routes.get((request.method, request.path))
        if handler:
            return await handler(request)

        for (method, pattern), handler in self._routes.items():
            if method != request.method:
                continue

            match, params = self._match_path(pattern, request.path)
            if match:
                request.path_params = params
                return await handler(request)

        return Response.error("Not Found", status=404)

    def _match_path(self, pattern: str, path: str) -> Tuple[bool, Dict[str, str]]:
        """Match path against pattern with parameters."""
        pattern_parts = pattern.split("/")
        path_parts = path.split("/")

        if len(pattern_parts) != len(path_parts):
            return False, {}

        params = {}
        for p_part, path_part in zip(pattern_parts, path_parts):
            if p_part.startswith("{") and p_part.endswith("}"):
                params[p_part[1:-1]] = path_part
            elif p_part != path_part:
                return False, {}

        return True, params

    # ========== Route Handlers ==========

    async def _handle_root(self, request: Request) -> Response:
        """Handle root endpoint."""
        return Response.json({
            "name": "epochsettle",
            "version": API_VERSION,
            "endpoints": list(f"{m} {p}" for (m, p) in self._routes.keys()),
        })

    async def _handle_health(self, request: Request) -> Response:
        """Handle health check."""
        counts = self.store.counts()
        return Response.json({
            "status": "healthy",
            "distributor": self.coordinator.gateway.address,
            "distributions": counts,
            "uptime_seconds": time.time() - self._start_time,
        })

    async def _handle_trigger(self, request: Request) -> Response:
        """Commit and distribute an explicit range."""
        try:
            epoch_range = _range_from_body(request)
        except ValueError as e:
            return Response.error(str(e), status=400)

        logger.info(f"Operator triggered distribution for {epoch_range}")
        try:
            status = await self.coordinator.run_distribution(epoch_range)
        except SettlementError as e:
            return Response.error(str(e), status=_error_status(e))

        return Response.json(status.to_dict())

    async def _handle_list(self, request: Request) -> Response:
        """List distribution statuses, optionally filtered by ?status=."""
        phase = None
        status_param = request.query.get("status", [])
        if status_param:
            try:
                phase = DistributionPhase(status_param[0])
            except ValueError:
                return Response.error(f"Unknown status: {status_param[0]}", status=400)

        statuses = self.store.list(phase)
        return Response.json({
            "count": len(statuses),
            "distributions": [s.to_dict() for s in statuses],
        })

    async def _handle_get(self, request: Request) -> Response:
        """Get one distribution status."""
        epoch_id = request.path_params.get("epoch_id")
        status = self.store.get(epoch_id) if epoch_id else None
        if status is None:
            return Response.error(f"No distribution for {epoch_id}", status=404)
        return Response.json(status.to_dict())

    async def _handle_summary(self, request: Request) -> Response:
        """Counts by status."""
        counts = self.store.counts()
        return Response.json({
            "total": sum(counts.values()),
            "by_status": counts,
        })

    async def _handle_calculate(self, request: Request) -> Response:
        """Preview assignments and batches for a range; writes nothing."""
        try:
            epoch_range = _range_from_body(request)
        except ValueError as e:
            return Response.error(str(e), status=400)

        try:
            plan = await self.coordinator.calculate(epoch_range)
        except Exception as e:
            error = classify_error(e)
            return Response.error(str(error), status=_error_status(error))

        return Response.json({
            "epoch_id": epoch_range.epoch_id,
            "merkle_root": plan.tree.root_hex,
            "target_apr": plan.target_apr,
            "batches": [b.to_dict() for b in plan.batches],
            **plan.result.to_dict(),
        })

    async def _handle_contract(self, request: Request) -> Response:
        """Ledger commitment for a range."""
        try:
            epoch_range = EpochRange.parse(request.path_params.get("epoch_id", ""))
        except ValueError as e:
            return Response.error(str(e), status=400)

        gateway = self.coordinator.gateway
        try:
            commitment = await trio.to_thread.run_sync(gateway.commitments, epoch_range.key)
            required = await trio.to_thread.run_sync(gateway.required_approvals)
        except Exception as e:
            error = classify_error(e)
            return Response.error(str(error), status=_error_status(error))

        return Response.json({
            "epoch_id": epoch_range.epoch_id,
            "commitment_key": "0x" + epoch_range.key.hex(),
            "required_approvals": required,
            **commitment.to_dict(),
        })

    async def _handle_cleanup(self, request: Request) -> Response:
        """Evict finished statuses older than max_age_hours."""
        max_age_seconds = None
        if request.body:
            try:
                body = request.json_body()
                if "max_age_hours" in body:
                    max_age_seconds = float(body["max_age_hours"]) * 3600
            except (TypeError, ValueError) as e:
                return Response.error(str(e), status=400)

        removed = self.coordinator.cleanup(max_age_seconds)
        return Response.json({"removed": removed, "remaining": len(self.store)})

    async def _handle_audit(self, request: Request) -> Response:
        """Audit log entries, optionally for one ?epoch_id=."""
        epoch_param = request.query.get("epoch_id", [])
        entries = self.audit.entries(epoch_param[0] if epoch_param else None)
        return Response.json({
            "count": len(entries),
            "entries": [e.to_dict() for e in entries],
        })

    async def _handle_metrics(self, request: Request) -> Response:
        """Handle Prometheus metrics endpoint."""
        return Response.text(
            self.metrics.collect(),
            content_type="text/plain; version=0.0.4; charset=utf-8",
        )
