"""
Tests for the fee engine.

Covers size estimation, fee rounding, greedy input selection with fee
retries, insufficient funds and the placement of leftover value.
"""

import os

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from core.codec import decode_message, encode_message, pay_to_pubkey_script
from core.error_handler import InsufficientFundsError, ValidationError
from core.fee_engine import (
    DustChangePolicy,
    FeeEngine,
    OutputRole,
    SpendableInput,
)


DUST = 1000
FEE_RATE = 100


def make_key() -> bytes:
    return ec.generate_private_key(ec.SECP256K1()).public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint
    )


def make_inputs(*values):
    return [SpendableInput(txid=f"{i:064x}", index=0, value=v) for i, v in enumerate(values)]


@pytest.fixture
def engine():
    return FeeEngine(dust=DUST, fee_rate=FEE_RATE)


@pytest.fixture
def owner_key():
    return make_key()


@pytest.fixture
def self_key():
    return make_key()


class TestSizeAndFee:
    """Tests for estimate_size and fee_for_size."""

    def test_estimate_size(self):
        """Size counts overhead, inputs and each output with its length prefix."""
        scripts = [b"\x00" * 35, b"\x00" * 300]

        assert FeeEngine.estimate_size(2, scripts) == 10 + 2 * 181 + (8 + 1 + 35) + (8 + 3 + 300)

    def test_fee_rounds_up_per_kilobyte(self, engine):
        """Every started 1024 bytes costs one fee unit."""
        assert engine.fee_for_size(0) == 0
        assert engine.fee_for_size(1) == FEE_RATE
        assert engine.fee_for_size(1024) == FEE_RATE
        assert engine.fee_for_size(1025) == 2 * FEE_RATE

    @pytest.mark.parametrize("input_count", [1, 3])
    def test_fee_never_drops_as_outputs_are_added(self, engine, owner_key, input_count):
        """Adding an output at a fixed input count never lowers the fee."""
        scripts = encode_message(os.urandom(1500), owner_key).outputs + [pay_to_pubkey_script(owner_key)]

        fees = [
            engine.fee_for_size(FeeEngine.estimate_size(input_count, scripts[:n]))
            for n in range(len(scripts) + 1)
        ]

        assert fees == sorted(fees)
        assert fees[-1] > fees[0]

    def test_invalid_policy_values(self):
        """Dust must be positive and the fee rate non-negative."""
        with pytest.raises(ValueError):
            FeeEngine(dust=0, fee_rate=FEE_RATE)
        with pytest.raises(ValueError):
            FeeEngine(dust=DUST, fee_rate=-1)


class TestValidation:
    """Tests for author payment validation."""

    def test_sub_dust_payment(self, engine):
        """Payments between zero and dust are rejected."""
        with pytest.raises(ValidationError, match=f"at least {DUST}"):
            engine.validate_payment(DUST - 1)

    def test_zero_and_dust_payments(self, engine):
        """Zero and exactly dust are accepted."""
        engine.validate_payment(0)
        engine.validate_payment(DUST)

    def test_plan_rejects_sub_dust_payment(self, engine, owner_key, self_key):
        """plan() validates before touching inputs."""
        with pytest.raises(ValidationError):
            engine.plan(b"x", owner_key, self_key, make_inputs(10**6), author_payment=1)


class TestPlan:
    """Tests for plan()."""

    def test_balanced(self, engine, owner_key, self_key):
        """Inputs equal outputs plus fee."""
        plan = engine.plan(os.urandom(300), owner_key, self_key, make_inputs(50_000))

        assert plan.total_input == plan.total_output + plan.fee
        assert plan.fee > 0

    def test_chunk_outputs_carry_message(self, engine, owner_key, self_key):
        """Chunk outputs are dust-valued and decode back to the body."""
        body = os.urandom(300)
        plan = engine.plan(body, owner_key, self_key, make_inputs(50_000))
        chunks = [o for o in plan.outputs if o.role == OutputRole.CHUNK]

        assert len(chunks) == plan.message.chunk_count
        assert all(o.value == DUST for o in chunks)
        assert decode_message([o.script for o in plan.outputs], owner_key) == body

    def test_cost_includes_payment(self, engine, owner_key, self_key):
        """Cost is dust per chunk plus the author payment."""
        plan = engine.plan(b"hi", owner_key, self_key, make_inputs(50_000), author_payment=5000)
        payment = [o for o in plan.outputs if o.role == OutputRole.PAYMENT]

        assert plan.cost == DUST + 5000
        assert payment[0].value == 5000
        assert payment[0].script == pay_to_pubkey_script(owner_key)

    def test_change_to_self(self, engine, owner_key, self_key):
        """Leftover of at least dust returns to the poster."""
        plan = engine.plan(b"hi", owner_key, self_key, make_inputs(50_000))
        change = plan.outputs[-1]

        assert change.role == OutputRole.CHANGE
        assert change.script == pay_to_pubkey_script(self_key)
        assert change.value == plan.change_value == 50_000 - DUST - plan.fee

    def test_exact_funds_drop_change(self, engine, owner_key, self_key):
        """Zero leftover produces no change output."""
        plan = engine.plan(b"hi", owner_key, self_key, make_inputs(DUST + FEE_RATE))

        assert plan.change_value == 0
        assert [o.role for o in plan.outputs] == [OutputRole.CHUNK]

    def test_greedy_selection_order(self, engine, owner_key, self_key):
        """Inputs are consumed in the given order and only as needed."""
        inputs = make_inputs(600, 600, 600, 50_000)
        plan = engine.plan(b"hi", owner_key, self_key, inputs)

        assert plan.inputs == inputs[:2]

    def test_insufficient_funds(self, engine, owner_key, self_key):
        """Not enough inputs reports the minimum balance."""
        with pytest.raises(InsufficientFundsError) as exc_info:
            engine.plan(b"hi", owner_key, self_key, make_inputs(DUST))

        assert exc_info.value.min_balance == DUST + FEE_RATE
        assert exc_info.value.available == DUST

    def test_no_inputs(self, engine, owner_key, self_key):
        """An empty wallet cannot post."""
        with pytest.raises(InsufficientFundsError):
            engine.plan(b"hi", owner_key, self_key, [])


class TestFeeGrowth:
    """A fee that grows with the inputs it pulls in."""

    BODY = bytes(range(256)) * 2

    def setup_shapes(self, engine, owner_key, self_key):
        body = self.BODY[:508]
        message = encode_message(body, owner_key)
        scripts = message.outputs + [pay_to_pubkey_script(self_key)]
        cost = DUST * message.chunk_count

        # one input fits one fee unit, two inputs need two
        assert engine.fee_for_size(FeeEngine.estimate_size(1, scripts)) == FEE_RATE
        assert engine.fee_for_size(FeeEngine.estimate_size(2, scripts)) == 2 * FEE_RATE
        return body, cost

    def test_insufficient_after_fee_growth(self, engine, owner_key, self_key):
        """Funds of cost + 1 fee unit fail once the second input doubles the fee."""
        body, cost = self.setup_shapes(engine, owner_key, self_key)

        with pytest.raises(InsufficientFundsError) as exc_info:
            engine.plan(body, owner_key, self_key, make_inputs(cost, FEE_RATE))

        assert exc_info.value.min_balance == cost + 2 * FEE_RATE

    def test_consumes_more_inputs_after_fee_growth(self, engine, owner_key, self_key):
        """An extra input covers the grown fee."""
        body, cost = self.setup_shapes(engine, owner_key, self_key)
        plan = engine.plan(body, owner_key, self_key, make_inputs(cost, FEE_RATE, FEE_RATE))

        assert len(plan.inputs) == 3
        assert plan.fee == 2 * FEE_RATE
        assert plan.total_input == plan.total_output + plan.fee


class TestLeftover:
    """Placement of leftover value below dust."""

    def test_folds_into_payment(self, engine, owner_key, self_key):
        """By default sub-dust change joins the author payment."""
        leftover = 10
        inputs = make_inputs(DUST + 5000 + FEE_RATE + leftover)
        plan = engine.plan(b"hi", owner_key, self_key, inputs, author_payment=5000)

        payment = [o for o in plan.outputs if o.role == OutputRole.PAYMENT][0]
        assert payment.value == 5000 + leftover
        assert plan.change_value == 0
        assert plan.total_input == plan.total_output + plan.fee

    def test_folds_into_last_chunk_without_payment(self, engine, owner_key, self_key):
        """Without a payment output the last chunk takes the leftover."""
        plan = engine.plan(os.urandom(300), owner_key, self_key, make_inputs(DUST * 3 + FEE_RATE + 10))

        assert [o.value for o in plan.outputs] == [DUST, DUST, DUST + 10]

    def test_last_chunk_policy(self, owner_key, self_key):
        """LAST_CHUNK folds into the last chunk even with a payment."""
        engine = FeeEngine(dust=DUST, fee_rate=FEE_RATE, change_policy=DustChangePolicy.LAST_CHUNK)
        plan = engine.plan(b"hi", owner_key, self_key, make_inputs(DUST + 5000 + FEE_RATE + 10), author_payment=5000)

        assert plan.outputs[0].value == DUST + 10
        assert plan.outputs[1].value == 5000

    def test_owner_consolidation(self, owner_key):
        """An owner paying themselves gets one output for payment and change."""
        engine = FeeEngine(dust=DUST, fee_rate=FEE_RATE, consolidate_owner_funds=True)
        plan = engine.plan(b"hi", owner_key, owner_key, make_inputs(50_000), author_payment=5000, is_owner=True)

        to_self = [o for o in plan.outputs if o.script == pay_to_pubkey_script(owner_key)]
        assert len(to_self) == 1
        assert to_self[0].value == 50_000 - DUST - plan.fee
        assert plan.change_value == to_self[0].value

    def test_owner_consolidation_without_payment(self, owner_key):
        """Without a payment the owner's leftover follows the usual rules."""
        engine = FeeEngine(dust=DUST, fee_rate=FEE_RATE, consolidate_owner_funds=True)

        plan = engine.plan(b"hi", owner_key, owner_key, make_inputs(50_000), is_owner=True)
        assert [o.role for o in plan.outputs] == [OutputRole.CHUNK, OutputRole.CHANGE]
        assert plan.change_value == 50_000 - DUST - plan.fee

        plan = engine.plan(b"hi", owner_key, owner_key, make_inputs(DUST + FEE_RATE + 10), is_owner=True)
        assert [o.role for o in plan.outputs] == [OutputRole.CHUNK]
        assert plan.outputs[0].value == DUST + 10

    @pytest.mark.parametrize("funds", [DUST + FEE_RATE + extra for extra in (0, 1, DUST - 1, DUST, DUST + 1, 25_000)])
    def test_no_sub_dust_outputs(self, engine, owner_key, self_key, funds):
        """Every output is worth at least dust whatever the leftover."""
        plan = engine.plan(b"hi", owner_key, self_key, make_inputs(funds))

        assert all(o.value >= DUST for o in plan.outputs)
        assert plan.total_input == plan.total_output + plan.fee
