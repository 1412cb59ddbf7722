"""Relayed (execute-from-outside) transaction endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from phonevault.api.deps import felt, get_services
from phonevault.errors import ValidationError
from phonevault.identity.address import to_hex
from phonevault.relay.base import Call, make_call
from phonevault.relay.executor import TransactionHandle
from phonevault.services import Services

router = APIRouter(prefix="/relay")


class CallPayload(BaseModel):
    """One inner call; give either `entrypoint` or `selector`."""
    to: str
    entrypoint: Optional[str] = None
    selector: Optional[str] = None
    calldata: list[str] = Field(default_factory=list)

    def to_call(self) -> Call:
        calldata = [felt(x, "calldata") for x in self.calldata]
        if self.entrypoint:
            return make_call(felt(self.to, "to"), self.entrypoint, calldata)
        if self.selector:
            return Call(felt(self.to, "to"), felt(self.selector, "selector"), tuple(calldata))
        raise ValidationError("Each call needs an entrypoint or a selector")


class OutsideExecutionRequest(BaseModel):
    """Intent signed by the account owner, submitted and paid by the relayer."""
    account: str
    calls: list[CallPayload]
    outside_nonce: str
    signature: list[str]
    execute_after: Optional[int] = None
    execute_before: Optional[int] = None
    operation_key: Optional[str] = None


class TransactionResponse(BaseModel):
    tx_hash: str
    status: str
    nonce: Optional[int] = None
    max_fee: Optional[str] = None
    error: Optional[str] = None
    reused: bool = False

    @classmethod
    def from_handle(cls, handle: TransactionHandle) -> "TransactionResponse":
        return cls(
            tx_hash=handle.tx_hash,
            status=handle.status.value,
            nonce=handle.nonce,
            max_fee=str(handle.max_fee) if handle.max_fee is not None else None,
            error=handle.error,
            reused=handle.reused,
        )


@router.post("/execute-from-outside", response_model=TransactionResponse)
async def execute_from_outside(
    request: OutsideExecutionRequest, services: Services = Depends(get_services)
) -> TransactionResponse:
    """Relay a signed outside execution."""
    if not request.calls:
        raise ValidationError("At least one call is required")

    handle = await services.relay.submit(
        [c.to_call() for c in request.calls],
        on_behalf_of=felt(request.account, "account"),
        signature=[felt(s, "signature") for s in request.signature],
        outside_nonce=felt(request.outside_nonce, "outside_nonce"),
        execute_after=request.execute_after,
        execute_before=request.execute_before,
        operation_key=f"outside:{request.operation_key}" if request.operation_key else None,
    )
    return TransactionResponse.from_handle(handle)


@router.get("/{tx_hash}", response_model=TransactionResponse)
async def get_transaction(
    tx_hash: str, services: Services = Depends(get_services)
) -> TransactionResponse:
    """Status of a relayed transaction, refreshed from the chain."""
    handle = await services.relay.get_status(to_hex(felt(tx_hash, "tx_hash")))
    return TransactionResponse.from_handle(handle)
