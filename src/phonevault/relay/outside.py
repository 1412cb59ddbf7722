"""Execute-from-outside (SNIP-9 v2) payloads.

The user signs an OutsideExecution off-chain; the relayer submits
`execute_from_outside_v2(outside_execution, signature)` on the user's account
and pays the fee. Nonce uniqueness and signature checks belong to the account
contract, not to this backend.
"""

from dataclasses import dataclass, field
from typing import Sequence

from phonevault.relay.base import Call, make_call

# Cairo short string 'ANY_CALLER'
ANY_CALLER = int.from_bytes(b"ANY_CALLER", "big")

# u64 bounds used when the caller gives no time window
NO_LOWER_BOUND = 0
NO_UPPER_BOUND = 2**64 - 1


@dataclass
class OutsideExecution:
    """Intent signed by the account owner."""
    nonce: int
    calls: list[Call] = field(default_factory=list)
    caller: int = ANY_CALLER
    execute_after: int = NO_LOWER_BOUND
    execute_before: int = NO_UPPER_BOUND

    def serialize(self) -> list[int]:
        """Cairo serialization of the struct."""
        data = [
            self.caller,
            self.nonce,
            self.execute_after,
            self.execute_before,
            len(self.calls),
        ]
        for call in self.calls:
            data.extend([call.to, call.selector, len(call.calldata), *call.calldata])
        return data


def wrap_outside_execution(
    account: int, execution: OutsideExecution, signature: Sequence[int]
) -> Call:
    """Build the relayer call forwarding a signed intent to `account`."""
    calldata = [*execution.serialize(), len(signature), *signature]
    return make_call(account, "execute_from_outside_v2", calldata)
