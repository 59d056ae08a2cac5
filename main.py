"""
Main entry point for topicflow
"""

import asyncio
import argparse
import json
import logging
import sys

from topicflow.utils.config import Config
from topicflow.utils.logger import setup_logging
from topicflow.web.config import settings

logger = logging.getLogger(__name__)


def _load_config(config_path: str = None) -> Config:
    config = Config(config_path or settings.pipeline_config_path)
    setup_logging(config.logging.level, config.logging.file)
    return config


def init_db_command(args) -> int:
    from topicflow.web.database import init_db

    _load_config(args.config)
    init_db()
    logger.info(f"Database ready at {settings.database_url}")
    return 0


def seed_command(args) -> int:
    from topicflow.web.database import SessionLocal, init_db
    from topicflow.web.services import topic_service

    config = _load_config(args.config)
    if not config.topics:
        logger.warning(f"No topics found in {args.config or settings.pipeline_config_path}")
        return 1

    init_db()
    db = SessionLocal()
    try:
        created = topic_service.seed_topics(db, config.topics, config)
    finally:
        db.close()
    logger.info(f"Seeded {len(created)} topics ({len(config.topics) - len(created)} already present)")
    return 0


async def _scan(config: Config, topic_id: int, batch_size: int = None):
    from topicflow.web.database import SessionLocal
    from topicflow.web.services.orchestrator_service import PipelineOrchestrator

    orchestrator = PipelineOrchestrator(SessionLocal, config)
    return await orchestrator.start_scan(topic_id, batch_size=batch_size)


def scan_command(args) -> int:
    from topicflow.web.services import topic_service

    config = _load_config(args.config)
    try:
        report = asyncio.run(_scan(config, args.topic, args.batch_size))
    except topic_service.TopicNotFoundError as e:
        logger.error(str(e))
        return 1
    print(report.model_dump_json(indent=2))
    return 0


def stats_command(args) -> int:
    from topicflow.web.database import SessionLocal
    from topicflow.web.services.orchestrator_service import PipelineOrchestrator
    from topicflow.web.services import topic_service

    config = _load_config(args.config)
    orchestrator = PipelineOrchestrator(SessionLocal, config)
    try:
        stats = orchestrator.stats(args.topic)
        sources, health = orchestrator.health(args.topic)
    except topic_service.TopicNotFoundError as e:
        logger.error(str(e))
        return 1

    print(
        json.dumps(
            {
                "stats": stats.model_dump(),
                "health": health.model_dump(mode="json"),
                "sources": [s.model_dump(mode="json") for s in sources],
            },
            indent=2,
        )
    )
    return 0


def serve_command(args) -> int:
    import uvicorn

    if args.config:
        settings.pipeline_config_path = args.config
    uvicorn.run("topicflow.web.app:app", host=args.host, port=args.port)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="topicflow - topic content pipeline orchestrator"
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default=None,
        help="YAML file with engine tunables and seed topics",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", parents=[common], help="Run the API with workers and scheduler")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=serve_command)

    scan = subparsers.add_parser("scan", parents=[common], help="Run a duplicate-cleanup scan for a topic")
    scan.add_argument("--topic", type=int, required=True, help="Topic ID")
    scan.add_argument("--batch-size", type=int, default=None, help="Items per batch")
    scan.set_defaults(func=scan_command)

    stats = subparsers.add_parser("stats", parents=[common], help="Print pipeline stats and source health")
    stats.add_argument("--topic", type=int, required=True, help="Topic ID")
    stats.set_defaults(func=stats_command)

    init_db = subparsers.add_parser("init-db", parents=[common], help="Create database tables")
    init_db.set_defaults(func=init_db_command)

    seed = subparsers.add_parser("seed", parents=[common], help="Create topics and sources from the config file")
    seed.set_defaults(func=seed_command)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
