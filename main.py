import asyncio
import logging
import json
from pathlib import Path
import argparse
import signal
import sys

from config.config import SystemConfig, load_config
from integrated_voting_system import IntegratedVotingSystem, demonstrate_integrated_system
from utils.errors import ConfigError
from utils.utils import setup_logging

logger = logging.getLogger(__name__)


async def run_demo(config: SystemConfig, num_voters: int, threshold: int,
                   results_path: Path) -> bool:
    try:
        results = await demonstrate_integrated_system(num_voters, threshold, config)
    except Exception as e:
        logger.error(f"Demo failed: {e}", exc_info=True)
        print(f"\n Demo failed: {e}")
        return False

    results_path.parent.mkdir(parents=True, exist_ok=True)
    with open(results_path, 'w') as f:
        json.dump(results, f, indent=2, default=str)
    print(f"📄 Results saved to: {results_path}")
    return True


async def run_service(config: SystemConfig) -> bool:
    """Run the CoinJoin scheduler until interrupted"""
    system = IntegratedVotingSystem(config)

    connection = await system.gateway.test_connection()
    if not connection['connected']:
        logger.warning(f"No broadcast backend reachable: {connection['backends']}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    await system.start()
    logger.info("CoinJoin voting service running, press Ctrl+C to stop")
    try:
        await stop_event.wait()
    finally:
        await system.shutdown()
        metrics_path = config.log_dir / "performance_metrics.json"
        system.performance_monitor.save_metrics(metrics_path)
        logger.info(f"Performance metrics saved to {metrics_path}")
    return True


def main():
    parser = argparse.ArgumentParser(
        description='Anonymous CoinJoin Voting System')
    parser.add_argument('--mode', choices=['demo', 'serve'], default='demo')
    parser.add_argument('--config', type=str,
                        default='config.yaml', help='Config file path')
    parser.add_argument('--voters', type=int, default=6,
                        help='Number of voters in demo mode')
    parser.add_argument('--threshold', type=int, default=3,
                        help='CoinJoin trigger threshold in demo mode')
    parser.add_argument('--results', type=str, default='results/demo_results.json',
                        help='Where the demo writes its election results')
    parser.add_argument('--log-level', type=str, default=None,
                        help='Override the configured log level')

    args = parser.parse_args()

    try:
        config = load_config(Path(args.config))
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(args.log_level or config.log_level, log_dir=config.log_dir)

    if args.mode == 'demo':
        success = asyncio.run(run_demo(config, args.voters, args.threshold,
                                       Path(args.results)))
        sys.exit(0 if success else 1)
    elif args.mode == 'serve':
        try:
            success = asyncio.run(run_service(config))
        except ConfigError as e:
            logger.error(f"Cannot start service: {e}")
            sys.exit(2)
        sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
