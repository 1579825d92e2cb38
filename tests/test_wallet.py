from __future__ import annotations

import asyncio

import pytest
from web3.exceptions import ContractLogicError

from pair_sniper.errors import RejectionError, SigningError
from pair_sniper.execution.evm_wallet import EvmWallet

from conftest import RECIPIENT, ROUTER

# Well-known development key (anvil/hardhat account #0)
DEV_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"


class FakeEth:
    def __init__(self, nonce=7, estimate_error=None, count_error=None):
        self.nonce = nonce
        self.estimate_error = estimate_error
        self.count_error = count_error
        self.count_calls = 0

    async def get_transaction_count(self, address, block_identifier):
        self.count_calls += 1
        if self.count_error:
            raise self.count_error
        await asyncio.sleep(0)
        return self.nonce

    async def estimate_gas(self, tx):
        if self.estimate_error:
            raise self.estimate_error
        return 150_000

    @property
    def gas_price(self):
        async def _price():
            return 10 * 10**9

        return _price()


class FakeW3:
    def __init__(self, eth):
        self.eth = eth


def swap_tx():
    return {"to": ROUTER, "data": "0x7ff36ab5", "value": 10**16}


def make_wallet(eth=None, key=DEV_KEY):
    return EvmWallet.create(FakeW3(eth or FakeEth()), 1, key, None)


def test_address_derived_from_key():
    assert make_wallet().address == RECIPIENT


def test_repr_hides_private_key():
    assert DEV_KEY not in repr(make_wallet())


@pytest.mark.asyncio
async def test_concurrent_signs_get_consecutive_nonces():
    eth = FakeEth(nonce=7)
    wallet = make_wallet(eth)
    signed = await asyncio.gather(*(wallet.sign(swap_tx()) for _ in range(3)))
    assert sorted(s.nonce for s in signed) == [7, 8, 9]
    assert len({s.tx_hash for s in signed}) == 3
    assert eth.count_calls == 1


@pytest.mark.asyncio
async def test_invalidate_nonce_rereads_pending_count():
    eth = FakeEth(nonce=3)
    wallet = make_wallet(eth)
    await wallet.sign(swap_tx())
    wallet.invalidate_nonce()
    eth.nonce = 10
    again = await wallet.sign(swap_tx())
    assert again.nonce == 10
    assert eth.count_calls == 2


@pytest.mark.asyncio
async def test_sign_fills_eip1559_fees():
    wallet = make_wallet()
    signed = await wallet.sign(swap_tx())
    assert signed.raw_transaction[:1] == b"\x02"


@pytest.mark.asyncio
async def test_missing_key_is_signing_error():
    wallet = EvmWallet.create(FakeW3(FakeEth()), 1, None, RECIPIENT)
    with pytest.raises(SigningError):
        await wallet.sign(swap_tx())


@pytest.mark.asyncio
async def test_estimate_revert_is_rejection():
    wallet = make_wallet(FakeEth(estimate_error=ContractLogicError("execution reverted")))
    with pytest.raises(RejectionError):
        await wallet.sign(swap_tx())


@pytest.mark.asyncio
async def test_unreachable_node_is_signing_error():
    wallet = make_wallet(FakeEth(count_error=ConnectionError("refused")))
    with pytest.raises(SigningError):
        await wallet.sign(swap_tx())
