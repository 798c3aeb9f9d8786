from __future__ import annotations

import time
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from defi_nlp.core.types import DefiIntent

DEFAULT_MAX_SLIPPAGE = 0.5
DEFAULT_DEADLINE_SEC = 1800
APPROVAL_GAS = 50_000


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ParameterBag(_Frozen):
    def get(self, name: str) -> Any:
        return getattr(self, name, None)

    def updated(self, **changes: Any) -> "ParameterBag":
        """Validated copy. Unknown fields are rejected by ``extra="forbid"``."""
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)

    def filled(self) -> dict[str, Any]:
        return {k: v for k, v in self.model_dump().items() if v is not None and k != "kind"}


class AssetParameters(ParameterBag):
    kind: Literal["asset"] = "asset"
    amount: float | None = None
    token: str | None = None
    protocol: str | None = None
    percentage: float | None = None
    relative_amount: Literal["all", "half"] | None = None
    collateral_token: str | None = None
    leverage: float | None = None
    direction: Literal["long", "short"] | None = None


class SwapParameters(ParameterBag):
    kind: Literal["swap"] = "swap"
    amount: float | None = None
    token: str | None = None
    from_token: str | None = None
    to_token: str | None = None
    protocol: str | None = None
    percentage: float | None = None
    relative_amount: Literal["all", "half"] | None = None
    slippage: float | None = None


class LiquidityParameters(ParameterBag):
    kind: Literal["liquidity"] = "liquidity"
    amount: float | None = None
    token: str | None = None
    pair_token: str | None = None
    protocol: str | None = None
    percentage: float | None = None
    relative_amount: Literal["all", "half"] | None = None


class QueryParameters(ParameterBag):
    kind: Literal["query"] = "query"
    token: str | None = None
    protocol: str | None = None
    amount: float | None = None


class BatchParameters(ParameterBag):
    kind: Literal["batch"] = "batch"
    command_ids: tuple[str, ...] = ()


PrimaryParameters = Annotated[
    Union[AssetParameters, SwapParameters, LiquidityParameters, QueryParameters, BatchParameters],
    Field(discriminator="kind"),
]

PARAMETER_MODELS: dict[str, type[ParameterBag]] = {
    "asset": AssetParameters,
    "swap": SwapParameters,
    "liquidity": LiquidityParameters,
    "query": QueryParameters,
    "batch": BatchParameters,
}


def _deadline() -> int:
    return int(time.time()) + DEFAULT_DEADLINE_SEC


class OptionalParameters(_Frozen):
    max_slippage: float = DEFAULT_MAX_SLIPPAGE
    deadline: int = Field(default_factory=_deadline)
    gas_price: float | None = None
    gas_limit: int | None = None


class Fee(_Frozen):
    type: Literal["protocol", "gas"]
    amount: float
    token: str


class RouteStep(_Frozen):
    protocol: str
    token_in: str
    token_out: str
    fee_tier: float | None = None


class RequiredApproval(_Frozen):
    token: str
    spender: str
    amount: float
    gas_estimate: int = APPROVAL_GAS


class DerivedParameters(_Frozen):
    output_amount: float | None = None
    price_impact: float | None = None
    fees: tuple[Fee, ...] = ()
    health_factor_after: float | None = None
    liquidation_price: float | None = None
    total_cost: float | None = None
    route: tuple[RouteStep, ...] = ()
    approvals: tuple[RequiredApproval, ...] = ()
    protocol_details: dict[str, Any] = Field(default_factory=dict)


class CommandParameters(_Frozen):
    primary: PrimaryParameters
    optional: OptionalParameters = Field(default_factory=OptionalParameters)
    derived: DerivedParameters = Field(default_factory=DerivedParameters)


class CommandMetadata(_Frozen):
    timestamp: float = Field(default_factory=time.time)
    source: Literal["nlp"] = "nlp"
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    processing_time_ms: float = 0.0
    required_approvals: tuple[RequiredApproval, ...] = ()
    protocols_involved: tuple[str, ...] = ()
    estimated_duration_s: int = 0


class ExecutableCommand(_Frozen):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    intent: DefiIntent
    action: str
    parameters: CommandParameters
    risk_level: Literal["low", "medium", "high"]
    risk_score: int = 0
    confirmation_required: bool = False
    confirmation_reasons: tuple[str, ...] = ()
    estimated_gas: int | None = None
    validation_status: Literal["valid", "invalid", "pending"] = "pending"
    metadata: CommandMetadata = Field(default_factory=CommandMetadata)
