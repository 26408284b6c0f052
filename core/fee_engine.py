"""
Fee Engine for the ledger-backed board

Selects spendable inputs and computes a sufficient fee for a message
transaction. The fee depends only on input and output counts and script
sizes, so the selection loop converges: every retry either consumes more
inputs or stops once the input source is exhausted.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from core.codec import EncodedMessage, encode_message, pay_to_pubkey_script
from core.error_handler import InsufficientFundsError, ValidationError


logger = logging.getLogger(__name__)


# version + locktime + input/output count varints
TX_OVERHEAD_SIZE = 10
# outpoint (36) + script length (1) + signature push (74) + key push (66) + sequence (4)
MAX_INPUT_SIZE = 181
OUTPUT_VALUE_SIZE = 8
FEE_UNIT_SIZE = 1024


class DustChangePolicy(Enum):
    """Where leftover change below the dust floor goes."""
    LAST_SUBSTANTIVE = "last_substantive"
    LAST_CHUNK = "last_chunk"


class OutputRole(Enum):
    """Purpose of an output in a funding plan."""
    CHUNK = "chunk"
    PAYMENT = "payment"
    CHANGE = "change"


@dataclass(frozen=True)
class SpendableInput:
    """An unspent output the poster can sign for."""
    txid: str
    index: int
    value: int


@dataclass
class PlannedOutput:
    """One output of a funding plan."""
    value: int
    script: bytes
    role: OutputRole

    def as_pair(self) -> Tuple[int, bytes]:
        return self.value, self.script


@dataclass
class FundingPlan:
    """
    A funded and balanced transaction, ready for the signer.

    Attributes:
        inputs: Consumed inputs in selection order
        outputs: Outputs in transaction order (chunks, payment, change)
        fee: Fee paid by the transaction
        change_value: Value returned to the poster (0 when folded or dropped)
        cost: Dust paid to chunk outputs plus the author payment
        message: Encoded message the chunk outputs carry
    """
    inputs: List[SpendableInput]
    outputs: List[PlannedOutput]
    fee: int
    change_value: int
    cost: int
    message: Optional[EncodedMessage] = field(repr=False, default=None)

    @property
    def total_input(self) -> int:
        return sum(i.value for i in self.inputs)

    @property
    def total_output(self) -> int:
        return sum(o.value for o in self.outputs)

    def output_pairs(self) -> List[Tuple[int, bytes]]:
        return [o.as_pair() for o in self.outputs]


def _varint_size(n: int) -> int:
    if n < 0xFD:
        return 1
    if n <= 0xFFFF:
        return 3
    if n <= 0xFFFFFFFF:
        return 5
    return 9


class FeeEngine:
    """
    Computes funding plans for message transactions.

    The engine holds only policy (dust floor, fee rate, change policy); each
    call to plan() works on its own snapshot of spendable inputs.
    """

    def __init__(
        self,
        dust: int,
        fee_rate: int,
        change_policy: DustChangePolicy = DustChangePolicy.LAST_SUBSTANTIVE,
        consolidate_owner_funds: bool = False
    ):
        """
        Initialize FeeEngine.

        Args:
            dust: Minimum relayable output value
            fee_rate: Fee per started 1024 bytes of transaction size
            change_policy: Where sub-dust change is folded
            consolidate_owner_funds: Route owner payment and change to one output
        """
        if dust <= 0:
            raise ValueError("Dust floor must be positive")
        if fee_rate < 0:
            raise ValueError("Fee rate cannot be negative")
        self.dust = dust
        self.fee_rate = fee_rate
        self.change_policy = change_policy
        self.consolidate_owner_funds = consolidate_owner_funds

    @staticmethod
    def estimate_size(input_count: int, output_scripts: Sequence[bytes]) -> int:
        """
        Maximum signed size of a transaction with the given shape.

        Args:
            input_count: Number of inputs
            output_scripts: Scripts of all outputs

        Returns:
            Size in bytes
        """
        size = TX_OVERHEAD_SIZE + input_count * MAX_INPUT_SIZE
        for script in output_scripts:
            size += OUTPUT_VALUE_SIZE + _varint_size(len(script)) + len(script)
        return size

    def fee_for_size(self, size: int) -> int:
        """Fee for a transaction of `size` bytes."""
        return math.ceil(size / FEE_UNIT_SIZE) * self.fee_rate

    def validate_payment(self, author_payment: int) -> None:
        """
        Reject author payments that would create a sub-dust output.

        Raises:
            ValidationError: If the payment is negative or below dust
        """
        if author_payment < 0:
            raise ValidationError("Post cost cannot be negative")
        if author_payment != 0 and author_payment < self.dust:
            raise ValidationError(f"Post cost should be at least {self.dust} or zero")

    def plan(
        self,
        body: bytes,
        owner_key: bytes,
        self_key: bytes,
        inputs: Sequence[SpendableInput],
        author_payment: int = 0,
        is_owner: bool = False,
        message: Optional[EncodedMessage] = None
    ) -> FundingPlan:
        """
        Fund a message transaction.

        Steps:
        1. Encode the body into chunk scripts
        2. Cost = dust per chunk + author payment
        3. Greedily consume inputs until they cover cost + current fee
        4. Estimate the fee for chunks, payment and a change placeholder
        5. If the fee grew, raise the target and continue consuming inputs
        6. Fold, emit or drop the leftover

        Args:
            body: Compressed payload
            owner_key: Board owner's public key (chunk scripts and payment)
            self_key: Poster's public key (change)
            inputs: Spendable inputs, consumed in the given order
            author_payment: Extra payment to the owner, 0 or >= dust
            is_owner: Whether the poster is the owner
            message: Pre-encoded message, if the caller already has it

        Returns:
            FundingPlan

        Raises:
            ValidationError: If the author payment is below dust
            InsufficientFundsError: If the inputs cannot cover cost + fee
        """
        self.validate_payment(author_payment)

        if message is None:
            message = encode_message(body, owner_key)

        payment_script = pay_to_pubkey_script(owner_key)
        change_script = pay_to_pubkey_script(self_key)

        chunk_cost = self.dust * message.chunk_count
        cost = chunk_cost + author_payment

        provisional_scripts = list(message.outputs)
        if author_payment:
            provisional_scripts.append(payment_script)
        provisional_scripts.append(change_script)

        inputs = list(inputs)
        consumed: List[SpendableInput] = []
        total_in = 0
        fee = 0
        target = cost

        while True:
            while total_in < target and len(consumed) < len(inputs):
                candidate = inputs[len(consumed)]
                consumed.append(candidate)
                total_in += candidate.value

            size = self.estimate_size(len(consumed), provisional_scripts)
            new_fee = self.fee_for_size(size)
            if new_fee > fee:
                target += new_fee - fee
                fee = new_fee
                continue
            break

        if total_in < target:
            logger.info(f"Insufficient funds: need {target}, have {total_in}")
            raise InsufficientFundsError(min_balance=target, available=total_in)

        outputs = [PlannedOutput(self.dust, script, OutputRole.CHUNK) for script in message.outputs]
        if author_payment:
            outputs.append(PlannedOutput(author_payment, payment_script, OutputRole.PAYMENT))

        leftover = total_in - cost - fee
        change_value = self._settle_leftover(outputs, leftover, change_script, is_owner)

        plan = FundingPlan(
            inputs=consumed,
            outputs=outputs,
            fee=fee,
            change_value=change_value,
            cost=cost,
            message=message
        )
        logger.debug(
            f"Planned {len(consumed)} inputs, {len(outputs)} outputs, "
            f"fee {fee}, change {change_value}"
        )
        return plan

    def _settle_leftover(
        self,
        outputs: List[PlannedOutput],
        leftover: int,
        change_script: bytes,
        is_owner: bool
    ) -> int:
        """
        Place the leftover value, returning the change output value.

        Zero leftover drops the change output. Leftover below dust is folded
        into an existing output. Otherwise it becomes change to self.
        """
        if leftover == 0:
            return 0

        if self.consolidate_owner_funds and is_owner:
            payment = self._find(outputs, OutputRole.PAYMENT)
            if payment is not None:
                # Paying ourselves: one output to self carries payment and change
                payment.value += leftover
                payment.role = OutputRole.CHANGE
                return payment.value

        if leftover < self.dust:
            target = None
            if self.change_policy == DustChangePolicy.LAST_SUBSTANTIVE:
                target = self._find(outputs, OutputRole.PAYMENT)
            if target is None:
                target = self._find(outputs, OutputRole.CHUNK)
            target.value += leftover
            return 0

        outputs.append(PlannedOutput(leftover, change_script, OutputRole.CHANGE))
        return leftover

    @staticmethod
    def _find(outputs: List[PlannedOutput], role: OutputRole) -> Optional[PlannedOutput]:
        """Last output with the given role."""
        for output in reversed(outputs):
            if output.role == role:
                return output
        return None
