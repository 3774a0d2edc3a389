# bazaar_flipper/solver_service.py
"""
Market data and order selection, served over stdin/stdout.

Started by the bot as `python -m bazaar_flipper.solver_service`; each line on
stdin is a request envelope and each reply goes out as one JSON line on
stdout. Logs go to stderr.
"""
import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List

from .config import load_config
from .logger import setup_console_logger
from .market_engine import BazaarApi
from .rpc import RpcServer
from .solver import SolveRequest, solve


class SolverService:
    def __init__(self, api: BazaarApi, logger: logging.Logger):
        self.api = api
        self.logger = logger

    def handlers(self):
        return {
            "solve": self.handle_solve,
            "get-products": self.handle_get_products,
        }

    async def handle_solve(self, data: Any) -> Dict[str, Any]:
        request = SolveRequest.from_dict(data)
        products = await self.api.get_products()
        # Snapshot the rolling buckets; the samplers keep appending meanwhile
        hour = {k: list(v) for k, v in self.api.history.hour.items()}
        day = {k: list(v) for k, v in self.api.history.day.items()}
        result = await asyncio.to_thread(solve, request, products, hour, day)
        self.logger.info(
            f"Solved: {len(result.new_orders)} orders | "
            f"max hourly profit {result.max_hourly_profit:,.1f} | budget {request.budget:,.0f}"
        )
        return result.to_dict()

    async def handle_get_products(self, data: Any) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in await self.api.get_products()]


async def serve_stdio(config_path: str):
    config = load_config(config_path)
    logger = setup_console_logger("SolverService", config['logging']['level'], stream=sys.stderr)

    api = BazaarApi(config, logger)
    if not await api.initialize():
        logger.warning("Bazaar API diagnostic failed, serving with whatever data arrives later")
    await api.start()

    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)

    async def write(data: bytes):
        writer.write(data)
        await writer.drain()

    service = SolverService(api, logger)
    try:
        await RpcServer(service.handlers(), logger).serve(reader, write)
    finally:
        await api.shutdown()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Bazaar solver service")
    parser.add_argument("--config", default="config.yaml")
    args = parser.parse_args(argv)
    asyncio.run(serve_stdio(args.config))


if __name__ == "__main__":
    main()
