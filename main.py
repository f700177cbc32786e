import argparse
import json
import logging
import sys
from typing import Any, Dict, List

import yaml

from core.app_context import AppContext
from core.config_loader import load_config
from core.exceptions import PipelineUnavailableError
from database.database import init_db
from pipeline import OpportunityPipeline

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def load_records(path: str) -> List[Dict[str, Any]]:
    """Load raw event records from a JSON, JSON-lines or YAML file."""
    logger.info(f"Loading events from {path}")
    with open(path, 'r') as f:
        if path.endswith('.jsonl'):
            return [json.loads(line) for line in f if line.strip()]
        if path.endswith(('.yaml', '.yml')):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    if isinstance(data, dict):
        data = data.get('events', [])
    return data or []


def _build(config_path: str) -> OpportunityPipeline:
    config = load_config(config_path)
    ctx = AppContext.build(config)
    init_db(ctx.engine)
    return OpportunityPipeline(ctx)


def cmd_init_db(args) -> int:
    config = load_config(args.config)
    ctx = AppContext.build(config)
    try:
        init_db(ctx.engine)
    finally:
        ctx.shutdown()
    return 0


def cmd_ingest(args) -> int:
    try:
        records = load_records(args.file)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Could not read {args.file}: {e}")
        return 1

    pipeline = _build(args.config)
    try:
        result = pipeline.run_pass(records)
        if args.burst:
            pipeline.ctx.scheduler.run_until_idle()
        print(json.dumps({
            'accepted': result.ingest.accepted,
            'duplicates': result.ingest.duplicates,
            'rejected': result.ingest.rejected,
            'intents': result.intents,
            'deliveries': result.deliveries,
            'results': [r.to_dict() for r in result.ingest.results if r.errors],
        }, indent=2))
    finally:
        pipeline.ctx.shutdown()
    return 0 if result.ingest.rejected == 0 else 2


def cmd_retry(args) -> int:
    pipeline = _build(args.config)
    try:
        if args.burst:
            passes = pipeline.ctx.scheduler.run_until_idle()
            logger.info(f"Retry burst finished after {passes} passes")
        else:
            pipeline.ctx.scheduler.run_once()
            pipeline.ctx.dispatcher.process_queued()
    finally:
        pipeline.ctx.shutdown()
    return 0


def cmd_purge(args) -> int:
    pipeline = _build(args.config)
    try:
        print(json.dumps(pipeline.purge_expired(), indent=2))
    finally:
        pipeline.ctx.shutdown()
    return 0


def cmd_stats(args) -> int:
    pipeline = _build(args.config)
    try:
        print(json.dumps(pipeline.stats(), indent=2, default=str))
    finally:
        pipeline.ctx.shutdown()
    return 0


def cmd_run(args) -> int:
    """Serve the HTTP API with the pipeline workers running in-process."""
    import uvicorn
    from web.backend.app import create_app

    config = load_config(args.config)
    app = create_app(config)
    uvicorn.run(app, host=args.host or config.web.host, port=args.port or config.web.port)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Opportunity alerts pipeline")
    parser.add_argument('--config', default='config.yaml', help='Path to config.yaml')
    parser.add_argument('--verbose', action='store_true')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('init-db', help='Create database tables').set_defaults(func=cmd_init_db)

    ingest = subparsers.add_parser('ingest', help='Ingest events from a file and deliver')
    ingest.add_argument('file', help='JSON, JSON-lines or YAML file of raw event records')
    ingest.add_argument('--burst', action='store_true', help='Keep running retry passes until nothing is due')
    ingest.set_defaults(func=cmd_ingest)

    run = subparsers.add_parser('run', help='Run the API server and pipeline workers')
    run.add_argument('--host', default=None)
    run.add_argument('--port', type=int, default=None)
    run.set_defaults(func=cmd_run)

    retry = subparsers.add_parser('retry', help='Process due retries and deferred deliveries')
    retry.add_argument('--burst', action='store_true', help='Repeat until nothing is due')
    retry.set_defaults(func=cmd_retry)

    subparsers.add_parser('purge', help='Apply retention to events, intents and deliveries').set_defaults(func=cmd_purge)
    subparsers.add_parser('stats', help='Print pipeline statistics').set_defaults(func=cmd_stats)

    args = parser.parse_args()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        return args.func(args)
    except PipelineUnavailableError as e:
        logger.error(f"Pipeline unavailable: {e}")
        return 3


if __name__ == "__main__":
    sys.exit(main())
