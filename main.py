# main.py
import asyncio
import signal
import sys
import questionary
from rich.live import Live
from rich.console import Console

from oraclearb.config import load_config
from oraclearb.dashboard import generate_dashboard
from oraclearb.engine import Engine
from oraclearb.errors import ConfigError
from oraclearb.logger import setup_console_logger, AsyncAuditLogger


def confirm_start(config) -> bool:
    """Asks before touching real money. Dry runs start without a prompt."""
    if config['system']['dry_run']:
        print("\n🔵 DRY RUN: orders are simulated against the live book.\n")
        return True

    r = config['risk']
    print("\n🚀 ORACLE ARB - LIVE TRADING\n")
    return bool(questionary.confirm(
        f"Trade {config['market']['token_id']} on {config['exchange']['name']} "
        f"with ${r['trade_amount_usd']} per entry (threshold {r['price_difference_threshold']})?",
        default=False,
    ).ask())


class OracleArbBot:
    def __init__(self, config):
        self.config = config
        self.logger = setup_console_logger("OracleArb", config['system']['log_level'])
        self.audit_log = AsyncAuditLogger(config['audit']['trade_log'])
        self.engine = Engine(config, self.logger, audit=self.audit_log)
        self._stop = asyncio.Event()

    def request_stop(self):
        if not self._stop.is_set():
            print("\n🛑 Stop requested. No new entries; draining open positions...")
            self._stop.set()

    def request_close_all(self):
        """`kill -USR1 <pid>` closes every open bracket without stopping the bot."""
        count = self.engine.request_close_all()
        self.logger.warning(f"✋ Manual close requested for {count} open position(s)")

    async def run(self):
        loop = asyncio.get_running_loop()
        handlers = [(signal.SIGINT, self.request_stop), (signal.SIGTERM, self.request_stop)]
        if hasattr(signal, 'SIGUSR1'):
            handlers.append((signal.SIGUSR1, self.request_close_all))
        for sig, handler in handlers:
            try:
                loop.add_signal_handler(sig, handler)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass

        try:
            print("Initializing Diagnostic Checks...")
            if not await self.engine.start():
                print("❌ Diagnostic Failed. Check exchange settings and open orders.")
                return

            console = Console()
            with Live(console=console, refresh_per_second=4) as live:
                while not self._stop.is_set():
                    live.update(generate_dashboard(self.engine))
                    try:
                        await asyncio.wait_for(self._stop.wait(), timeout=0.25)
                    except asyncio.TimeoutError:
                        pass
        finally:
            print("Shutting down resources...")
            await self.engine.shutdown()


if __name__ == "__main__":
    try:
        conf = load_config("config.yaml")
    except ConfigError as e:
        print(f"❌ Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    if not confirm_start(conf):
        print("Aborted.")
        sys.exit()

    try:
        import uvloop
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
    except ImportError:
        pass

    try:
        asyncio.run(OracleArbBot(conf).run())
    except KeyboardInterrupt:
        print("\n🛑 Bot Stopped by User.")
        sys.exit()
