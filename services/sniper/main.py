import asyncio
import signal
import sys
from contextlib import suppress

from loguru import logger

from pair_sniper.chains.evm import EvmClient
from pair_sniper.chains.feed import PairCreatedFeed
from pair_sniper.chains.reserves import PoolStateReader
from pair_sniper.config import AppSettings
from pair_sniper.errors import RestartBudgetExceeded, TransportError
from pair_sniper.execution.evm_wallet import EvmWallet
from pair_sniper.execution.tracker import SubmissionTracker
from pair_sniper.orchestrator import Orchestrator

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


async def check_quote_allowance(client: EvmClient, settings: AppSettings, owner: str) -> None:
    # swapExactTokensForTokens pulls the quote token through the router
    if settings.quote_is_native():
        return
    token = client.erc20(settings.resolved_quote_token())
    allowance = int(await token.functions.allowance(owner, client.router().address).call())
    if allowance < settings.trade_amount_wei:
        logger.warning(
            "Router allowance for {} is {} < trade amount {}; swaps will revert until approved",
            settings.resolved_quote_token(),
            allowance,
            settings.trade_amount_wei,
        )


async def run(settings: AppSettings) -> None:
    client = await EvmClient.create(settings)
    private_key = settings.evm_private_key.get_secret_value() if settings.evm_private_key else None
    wallet = EvmWallet.create(client.w3, settings.evm_chain_id, private_key, settings.executor_address)
    if not settings.dry_run and not wallet.private_key:
        raise SystemExit("PSE_EVM_PRIVATE_KEY is required when PSE_DRY_RUN is false")
    if settings.slippage_bps == 0:
        logger.warning("slippage_bps is 0: swaps are sent with amountOutMin = 0")
    if not settings.dry_run and wallet.address:
        await check_quote_allowance(client, settings, wallet.address)

    tracker = SubmissionTracker(client=client, wallet=wallet, settings=settings, router=client.router())
    orchestrator = Orchestrator(
        settings=settings,
        feed=PairCreatedFeed(client, settings),
        reader=PoolStateReader(client),
        tracker=tracker,
        recipient=wallet.address or ZERO_ADDRESS,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, orchestrator.stop)

    await orchestrator.run()


def main():
    settings = AppSettings()
    logger.remove()
    logger.add(lambda msg: print(msg, end=""), level=settings.log_level)

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Sniper interrupted; shutting down.")
    except (RestartBudgetExceeded, TransportError) as e:
        logger.critical("Sniper stopped: {}", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
