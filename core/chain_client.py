"""
Fleet Rebalancer Core: Chain / Portfolio Client

Boundary contracts for the external collaborators the scheduler depends on,
plus a JSON-over-HTTP client for a portfolio gateway service that fronts the
RPC endpoint and the portfolio contract.

The gateway client does not retry: retries, timeouts and circuit breaking
belong to the ResilientExecutor that wraps every call. It only translates
transport failures onto the error taxonomy.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import requests

from core.exceptions import (
    ErrorKind,
    FatalError,
    InvalidPortfolioInput,
    RetryableError,
    classify_error,
)
from core.models import PortfolioSnapshot, SubmitResult

logger = logging.getLogger(__name__)


class ChainClient(ABC):
    """Reads portfolio state and submits rebalances for a managed portfolio."""

    @abstractmethod
    def get_snapshot(self, portfolio_id: str) -> PortfolioSnapshot:
        raise NotImplementedError

    @abstractmethod
    def submit_rebalance(
        self,
        portfolio_id: str,
        new_weights: Mapping[str, float],
        new_shorts: Mapping[str, bool],
    ) -> SubmitResult:
        raise NotImplementedError


class MarketConditionsProvider(ABC):
    @abstractmethod
    def get_volatility(self) -> float:
        """Ambient market volatility in [0, 1]."""
        raise NotImplementedError


def validate_rebalance_order(new_weights: Mapping[str, float], new_shorts: Mapping[str, bool]) -> None:
    """Weights and short flags must describe the same asset vector."""
    if set(new_weights) != set(new_shorts):
        raise InvalidPortfolioInput(
            f"weights/shorts length mismatch: {len(new_weights)} weights vs {len(new_shorts)} short flags"
        )
    for asset, weight in new_weights.items():
        if weight < 0:
            raise InvalidPortfolioInput(f"negative weight for {asset}: {weight}")


class GatewayChainClient(ChainClient, MarketConditionsProvider):
    """
    HTTP client for the portfolio gateway.

    Endpoints:
    - GET  /portfolios/{id}            -> {"total_value", "assets": {sym: {"weight", "value"}}}
    - POST /portfolios/{id}/rebalance  -> {"success", "error_kind"?, "error"?, "tx_hash"?, "gas_used"?}
    - GET  /market/conditions          -> {"volatility"}
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        request_timeout_seconds: float = 20.0,
    ):
        if "${" in base_url:
            base_url = os.path.expandvars(base_url)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or os.getenv("GATEWAY_API_KEY", "")
        self.request_timeout_seconds = request_timeout_seconds
        logger.info("Initialized GatewayChainClient for %s", self.base_url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _req(self, method: str, endpoint: str, body: Optional[dict] = None) -> Any:
        url = self.base_url + endpoint
        try:
            response = requests.request(
                method,
                url,
                headers=self._headers(),
                json=body,
                timeout=self.request_timeout_seconds,
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            if classify_error(exc) is ErrorKind.RETRYABLE:
                logger.warning("Gateway %s %s returned %s", method, endpoint, status_code)
                raise RetryableError(f"gateway {method} {endpoint} returned {status_code}", exc) from exc
            logger.error("Gateway client error: %s %s returned %s", method, endpoint, status_code)
            raise FatalError(f"gateway {method} {endpoint} returned {status_code}", exc) from exc
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
            logger.warning("Network error on %s %s: %s", method, endpoint, exc)
            raise RetryableError(f"network error on {method} {endpoint}: {exc}", exc) from exc
        except ValueError as exc:
            # Body was not JSON
            raise FatalError(f"invalid JSON from gateway {method} {endpoint}", exc) from exc

    def get_snapshot(self, portfolio_id: str) -> PortfolioSnapshot:
        payload = self._req("GET", f"/portfolios/{portfolio_id}")
        if not isinstance(payload, Mapping):
            raise InvalidPortfolioInput(f"unexpected snapshot payload for {portfolio_id}")
        return PortfolioSnapshot.from_dict(payload)

    def submit_rebalance(
        self,
        portfolio_id: str,
        new_weights: Mapping[str, float],
        new_shorts: Mapping[str, bool],
    ) -> SubmitResult:
        validate_rebalance_order(new_weights, new_shorts)
        assets = sorted(new_weights)
        body = {
            "assets": assets,
            "weights": [float(new_weights[a]) for a in assets],
            "is_short": [bool(new_shorts[a]) for a in assets],
        }
        payload = self._req("POST", f"/portfolios/{portfolio_id}/rebalance", body=body) or {}

        success = bool(payload.get("success", False))
        error_kind = None
        if not success:
            raw_kind = str(payload.get("error_kind") or "fatal").lower()
            error_kind = ErrorKind.RETRYABLE if raw_kind == "retryable" else ErrorKind.FATAL

        gas_used = payload.get("gas_used")
        return SubmitResult(
            success=success,
            error_kind=error_kind,
            error_message=payload.get("error"),
            tx_hash=payload.get("tx_hash"),
            gas_used=int(gas_used) if gas_used is not None else None,
        )

    def get_volatility(self) -> float:
        payload = self._req("GET", "/market/conditions") or {}
        volatility = float(payload.get("volatility", 0.0))
        return min(max(volatility, 0.0), 1.0)
