import argparse

from rich import print

from polymarket_updown.config import load_config
from polymarket_updown.loop import Bot, run_forever


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Late-reversal trader for Polymarket up/down sessions")
    parser.add_argument("--config", required=True)
    parser.add_argument("--once", action="store_true", help="sync and evaluate a single tick, then exit")
    parser.add_argument("--mode", choices=["paper", "live"], help="override app.mode from the config")
    parser.add_argument("--quiet", action="store_true", help="events file only, no console output")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    cfg = load_config(args.config)
    if args.mode:
        cfg.app.mode = args.mode

    bot = Bot.build(cfg, echo=not args.quiet)
    if not args.quiet:
        print(
            f"[bold]Mode[/bold] {cfg.app.mode} | policy={cfg.strategy.exit_policy.value} "
            f"| predictor={'on' if bot.predictor else 'off'} | events={cfg.storage.events_path}"
        )

    if args.once:
        bot.start()
        try:
            bot.tick()
        finally:
            bot.stop()
        return

    try:
        run_forever(bot)
    except KeyboardInterrupt:
        print("[yellow]Shutting down bot...[/yellow]")


if __name__ == "__main__":
    main()
