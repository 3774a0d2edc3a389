# main.py
import asyncio
import importlib
import signal
import sys
import questionary
from rich.live import Live
from rich.table import Table
from rich.layout import Layout
from rich.console import Console
from rich.panel import Panel

# Import Engines
from bazaar_flipper.config import load_config
from bazaar_flipper.logger import setup_console_logger, AsyncAuditLogger
from bazaar_flipper.catalog import ProductCatalog
from bazaar_flipper.order_book import OrderBookSynchronizer
from bazaar_flipper.inventory import InventoryEngine
from bazaar_flipper.risk_engine import RiskEngine
from bazaar_flipper.execution import ExecutionService
from bazaar_flipper.strategy import FlipControlLoop
from bazaar_flipper.rpc import RpcChannel, SolverClient, encode
from bazaar_flipper.models import FlipperState

# --- UI HELPER FUNCTIONS ---

def startup_selection(config):
    """Interactive CLI to pick the account to run."""
    print("\n🛒 BAZAAR FLIPPER \n")
    accounts = config.get('accounts') or []
    if not accounts:
        print("No accounts configured in config.yaml. Exiting.")
        sys.exit()
    if len(accounts) == 1:
        return accounts[0]

    names = [a['name'] for a in accounts]
    name = questionary.select("Select Account to Run:", choices=names).ask()
    if not name:
        print("No account selected. Exiting.")
        sys.exit()
    return next(a for a in accounts if a['name'] == name)

def load_game_client(config, account):
    """Builds the game client from the 'module:callable' factory in config['game']."""
    factory_path = config['game'].get('client_factory')
    if not factory_path:
        print("No game.client_factory configured. Exiting.")
        sys.exit()
    module_name, _, attr = factory_path.partition(':')
    factory = getattr(importlib.import_module(module_name), attr)
    return factory(account, config)

def generate_dashboard(metrics):
    """
    Creates the Rich Console Dashboard layout.
    Shows open orders, the daily limit and profit.
    """

    # 1. Orders Table
    orders_table = Table(title="📒 Open Orders")
    orders_table.add_column("Product", style="cyan")
    orders_table.add_column("Type", style="magenta")
    orders_table.add_column("Amount", justify="right")
    orders_table.add_column("Price", justify="right", style="green")
    orders_table.add_column("Undercut", justify="right", style="red")

    orders = metrics.get('orders', [])
    for o in orders[:14]:
        undercut = o.get('undercutAmount')
        orders_table.add_row(
            o['productId'],
            o['type'].upper() + (" ✅" if o.get('filled') else ""),
            f"{o['amount']:,}" if o.get('amount') is not None else "-",
            f"{o['price']:,.1f}" if o.get('price') is not None else "-",
            f"{undercut:,.0f}" if undercut is not None else "-",
        )

    # 2. Status Table
    status_table = Table(title="📊 Flipper Status")
    status_table.add_column("Metric", style="cyan")
    status_table.add_column("Value", justify="right")

    hours = metrics['elapsed'] / 3600
    status_table.add_row("State", f"{metrics['state']} ({metrics['activity']})" + (" ⏸ timeout" if metrics['in_timeout'] else ""))
    status_table.add_row("Elapsed", f"{hours:.2f}h")
    status_table.add_row("Cycles", str(metrics['cycles']))
    status_table.add_row("Waited", f"{metrics['total_wait_time'] / 60:,.1f} min")
    status_table.add_row("Purse", f"{metrics['purse']:,.0f}")
    status_table.add_row("Daily Limit", f"{metrics['used_daily_limit']:,.0f} / {metrics['true_limit']:,.0f}")
    status_table.add_row("Profit / h", f"{metrics['profit_per_hour']:,.0f}")
    if metrics['online_members']:
        status_table.add_row("Co-op Online", ", ".join(metrics['online_members']))

    # Layout Construction
    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="bottom")
    )

    layout["top"].split_row(
        Layout(Panel(orders_table)),
        Layout(Panel(status_table))
    )

    footer = Panel(f"[bold gold1]TOTAL: {metrics['total']:,.0f}  |  PROFIT: {metrics['profit']:,.0f}[/bold gold1]", style="white on blue")
    layout["bottom"].update(footer)
    layout["bottom"].size = 3

    return layout

# --- MAIN CONTROLLER ---

class FlipperBot:
    def __init__(self, config, account):
        self.config = config
        self.account = account

        self.audit_log = AsyncAuditLogger(self.config['audit']['trade_log'])
        self.logger = setup_console_logger("BazaarFlipper", self.config['logging']['level'])

        self.risk = RiskEngine(self.config, self.logger, quota_path=account.get('quota_file'))
        self.solver_proc = None
        self.channel = None
        self.reader_task = None
        self.shutdown_task = None
        self.loop = None

    async def _start_solver(self):
        self.solver_proc = await asyncio.create_subprocess_exec(
            sys.executable, "-m", "bazaar_flipper.solver_service",
            "--config", self.config.get('_path') or "config.yaml",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
        )

        async def send(message):
            self.solver_proc.stdin.write(encode(message))
            await self.solver_proc.stdin.drain()

        self.channel = RpcChannel(send, self.logger, timeout=self.config['system']['rpc_timeout_seconds'])
        self.reader_task = asyncio.create_task(self.channel.read_from(self.solver_proc.stdout))

    async def _stop_solver(self):
        if self.reader_task is not None:
            self.reader_task.cancel()
            await asyncio.gather(self.reader_task, return_exceptions=True)
        if self.solver_proc and self.solver_proc.returncode is None:
            self.solver_proc.terminate()
            await self.solver_proc.wait()

    async def _save_and_exit(self):
        """Persists the quota (time boxed), then stops the loop."""
        try:
            await asyncio.wait_for(self.risk.save(), self.config['system']['shutdown_save_timeout_seconds'])
        except asyncio.TimeoutError:
            self.logger.error("Saving the daily limit timed out")
        if self.loop:
            self.loop.stop()

    def _on_signal(self):
        self.shutdown_task = asyncio.create_task(self._save_and_exit())

    def _on_metrics(self, metrics):
        self.logger.info(
            f"Cycles: {metrics['cycles']} | Profit/h: {metrics['profit_per_hour']:,.0f} | "
            f"Daily limit: {metrics['used_daily_limit']:,.0f} / {metrics['true_limit']:,.0f}"
        )

    async def run(self):
        game = None
        try:
            print("Initializing Diagnostic Checks...")
            await self.audit_log.start()
            await self.risk.load()
            await self._start_solver()

            solver = SolverClient(self.channel, self.logger)
            catalog = ProductCatalog(solver, self.logger)
            if not await catalog.refresh():
                print("❌ Diagnostic Failed. Solver service did not answer.")
                return

            game = load_game_client(self.config, self.account)
            order_book = OrderBookSynchronizer(game, catalog, self.config, self.logger)
            inventory = InventoryEngine(game, catalog, self.logger)
            executor = ExecutionService(
                game, catalog, order_book, inventory, self.risk, self.config, self.logger, self.audit_log
            )
            self.loop = FlipControlLoop(
                game, catalog, order_book, inventory, executor, self.risk, solver,
                self.config, self.logger, on_metrics=self._on_metrics,
            )
            game.add_message_listener(self.loop.on_chat)

            for sig in (signal.SIGINT, signal.SIGTERM):
                asyncio.get_running_loop().add_signal_handler(sig, self._on_signal)

            print("Connecting...")
            await game.connect()
            self.loop.start()

            console = Console()
            with Live(console=console, refresh_per_second=1) as live:
                while self.loop.state != FlipperState.STOPPED:
                    live.update(generate_dashboard(self.loop.serialize()))
                    await asyncio.sleep(1)
        finally:
            print("Shutting down resources...")
            await self.risk.save()
            await self.audit_log.stop()
            if game is not None:
                await game.disconnect()
            await self._stop_solver()

if __name__ == "__main__":
    raw_conf = load_config("config.yaml")
    try:
        account = startup_selection(raw_conf)
        bot = FlipperBot(raw_conf, account)
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(bot.run())
    except KeyboardInterrupt:
        print("\n🛑 Bot Stopped by User.")
        sys.exit()
