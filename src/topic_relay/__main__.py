import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from topic_relay.app_config import ConfigError, load_json_config, parse_app_config, resolve_runtime_env
from topic_relay.bootstrap import bootstrap_runtime


async def main() -> None:
    load_dotenv()

    try:
        app = parse_app_config(load_json_config())
        env = resolve_runtime_env()
        runtime = await bootstrap_runtime(app, env)
    except ConfigError as ex:
        logger.error(f"Configuration error: {ex}")
        sys.exit(1)

    if runtime.log_descriptions:
        logger.info(f"Logging: {', '.join(runtime.log_descriptions)}")
    logger.info(f"Allowed users: {len(env.allowed_user_ids)}; workspace roots: {app.allowed_workspace_roots or 'any'}")

    try:
        await runtime.start()
        await asyncio.Event().wait()
    finally:
        await runtime.close()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    run()
