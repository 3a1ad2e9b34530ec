"""
Treasury Transaction Builder

Builds unsigned, chain-ready descriptors for treasury contract calls.  The
builder never signs, broadcasts or tracks nonces; everything chain-dependent
arrives in a ChainContext, so ``build`` is a pure function of
(call kind, arguments, context) and safe to share between tasks.

Calldata is Ethereum ABI: 4-byte selector of the function signature followed
by the ABI-encoded arguments, transfer id first.

Calls:
  - EXCHANGE_IN:   exchangeIn(string transferId, address user, uint256 tokens)
  - EXCHANGE_OUT:  exchangeOut(string transferId, address marketplace)
  - CLEARING:      clearing(string transferId, address creditor, uint256 amount)
  - PAYMENT:       payment(string transferId, address recipient, uint256 amount)
  - SET_PAID:      setPaid(string transferId, string transferCode)
  - FEE_PAYMENT:   feePayment(string transferId, address marketplace, uint256 fee)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, localcontext
from enum import Enum
from typing import Any, Dict, List, Tuple

from eth_abi import encode
from eth_utils import keccak, to_checksum_address

from ..constants import (
    GAS_CLEARING,
    GAS_EXCHANGE_IN,
    GAS_EXCHANGE_OUT,
    GAS_FEE_PAYMENT,
    GAS_PAYMENT,
    GAS_SET_PAID,
    TOKEN_DECIMALS,
)
from ..exceptions import InvalidParameterError, MissingParameterError
from .context import ChainContext


class CallKind(str, Enum):
    EXCHANGE_IN = "exchange_in"
    EXCHANGE_OUT = "exchange_out"
    CLEARING = "clearing"
    PAYMENT = "payment"
    SET_PAID = "set_paid"
    FEE_PAYMENT = "fee_payment"


@dataclass(frozen=True)
class ContractCall:
    """ABI shape of one treasury contract function."""
    name: str
    params: Tuple[Tuple[str, str], ...]     # (argument name, ABI type)
    gas_limit: int

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(abi for _, abi in self.params)})"

    @property
    def selector(self) -> bytes:
        return keccak(text=self.signature)[:4]


CONTRACT_CALLS: Dict[CallKind, ContractCall] = {
    CallKind.EXCHANGE_IN: ContractCall(
        "exchangeIn", (("transferId", "string"), ("user", "address"), ("tokens", "uint256")), GAS_EXCHANGE_IN,
    ),
    CallKind.EXCHANGE_OUT: ContractCall(
        "exchangeOut", (("transferId", "string"), ("marketplace", "address")), GAS_EXCHANGE_OUT,
    ),
    CallKind.CLEARING: ContractCall(
        "clearing", (("transferId", "string"), ("creditor", "address"), ("amount", "uint256")), GAS_CLEARING,
    ),
    CallKind.PAYMENT: ContractCall(
        "payment", (("transferId", "string"), ("recipient", "address"), ("amount", "uint256")), GAS_PAYMENT,
    ),
    CallKind.SET_PAID: ContractCall(
        "setPaid", (("transferId", "string"), ("transferCode", "string")), GAS_SET_PAID,
    ),
    CallKind.FEE_PAYMENT: ContractCall(
        "feePayment", (("transferId", "string"), ("marketplace", "address"), ("fee", "uint256")), GAS_FEE_PAYMENT,
    ),
}


@dataclass(frozen=True)
class TransactionObject:
    """Unsigned transaction descriptor handed to the external signer."""
    chain_id: int
    nonce: int
    gas_limit: int
    gas_price: int
    to: str
    sender: str
    data: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chainId": self.chain_id,
            "nonce": self.nonce,
            "gasLimit": self.gas_limit,
            "gasPrice": self.gas_price,
            "to": self.to,
            "from": self.sender,
            "data": "0x" + self.data.hex(),
        }


class TransactionBuilder:
    """Builds treasury contract call descriptors."""

    def __init__(self, contract_address: str, token_decimals: int = TOKEN_DECIMALS):
        self.contract_address = to_checksum_address(contract_address)
        self.token_decimals = token_decimals
        self._unit = Decimal(10) ** token_decimals

    def to_base_units(self, amount: Decimal) -> int:
        """Token amount → integer base units; finer precision is rejected."""
        with localcontext() as ctx:
            ctx.prec = 78
            scaled = Decimal(amount) * self._unit
        if scaled != scaled.to_integral_value():
            raise InvalidParameterError(
                f"Amount {amount} exceeds {self.token_decimals} token decimals"
            )
        if scaled < 0:
            raise InvalidParameterError(f"Amount {amount} is negative")
        return int(scaled)

    def _abi_value(self, abi_type: str, name: str, value: Any) -> Any:
        if value is None:
            raise MissingParameterError(f"Missing contract argument: {name}")
        if abi_type == "address":
            return to_checksum_address(value)
        if abi_type == "uint256":
            return self.to_base_units(value)
        return str(value)

    def encode_call(self, kind: CallKind, args: Dict[str, Any]) -> bytes:
        """Selector + ABI-encoded arguments for ``kind``."""
        call = CONTRACT_CALLS[CallKind(kind)]
        types: List[str] = []
        values: List[Any] = []
        for name, abi_type in call.params:
            types.append(abi_type)
            values.append(self._abi_value(abi_type, name, args.get(name)))
        return call.selector + encode(types, values)

    def build(
        self,
        kind: CallKind,
        sender: str,
        args: Dict[str, Any],
        context: ChainContext,
    ) -> TransactionObject:
        """
        Descriptor for one contract call.

        Args:
            kind: treasury contract function to call
            sender: address that will sign the transaction
            args: contract arguments by name (see CONTRACT_CALLS)
            context: chain id, nonce and gas snapshot for ``sender``
        """
        call = CONTRACT_CALLS[CallKind(kind)]
        return TransactionObject(
            chain_id=context.chain_id,
            nonce=context.nonce,
            gas_limit=context.gas_limit or call.gas_limit,
            gas_price=context.gas_price,
            to=self.contract_address,
            sender=to_checksum_address(sender),
            data=self.encode_call(kind, args),
        )
