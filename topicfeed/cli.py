"""
Command-line interface for topicfeed.
"""
import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from typing import List, Optional

import tqdm
from dotenv import load_dotenv

from topicfeed.config import load_config
from topicfeed.core.cache import SQLiteCacheStore
from topicfeed.core.feed import TopicFeed
from topicfeed.core.models import FILTER_CATEGORIES
from topicfeed.errors import TopicNotFoundError
from topicfeed.fetchers.remote import RestContentSource
from topicfeed.utils.http import REQUEST_TIMEOUTS

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None):
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(description="Topic Feed - sync and filter a topic's story feed")
    parser.add_argument("slug", help="Topic slug")
    parser.add_argument("-k", "--keyword", action="append", default=[], help="Keyword filter (repeatable)")
    parser.add_argument("--landmark", action="append", default=[], help="Landmark filter (repeatable)")
    parser.add_argument("--organization", action="append", default=[], help="Organization filter (repeatable)")
    parser.add_argument("--source", action="append", default=[], help="Source domain filter (repeatable)")
    parser.add_argument("--pages", type=int, default=0, help="Additional pages to load")
    parser.add_argument("--limit", type=int, default=0, help="Limit number of stories to print (0 = no limit)")
    parser.add_argument("--refresh-cache", action="store_true", help="Ignore the cached snapshot")
    parser.add_argument("--no-cache", action="store_true", help="Do not read or write the snapshot cache")
    parser.add_argument("--show-filters", action="store_true", help="Print available filter options with counts")
    parser.add_argument("--config", help="Path to a YAML or JSON config file")
    parser.add_argument("--network", choices=sorted(REQUEST_TIMEOUTS), help="Network class for request timeouts")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of text")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def format_text(feed: TopicFeed, stories, options=None) -> str:
    """Render the feed as plain text."""
    title = feed.topic.name if feed.topic is not None else feed.slug
    lines = [f"{title} - {len(stories)} stories"]
    active = [f"{category}={value}" for category in FILTER_CATEGORIES for value in feed.selection.get(category)]
    if active:
        lines.append(f"Filters: {', '.join(active)}")
    status = feed.status
    if status.using_cached_content:
        lines.append("(showing cached content)")
    if status.pagination_disabled:
        lines.append("(offline view, no further pages)")
    if feed.has_new_stories:
        lines.append(f"{feed.new_story_count} new stories available")
    lines.append("")

    for story in stories:
        date = (story.content_date or '')[:10] or '????-??-??'
        source = f"  [{story.source_domain}]" if story.source_domain else ""
        flag = "  !" if story.defects else ""
        lines.append(f"{date}  {story.title}{source}  ({len(story.slides)} slides){flag}")

    if options:
        lines.append("")
        lines.append("Available filters:")
        for category in FILTER_CATEGORIES:
            counts = options.get(category) or []
            if counts:
                lines.append(f"  {category}: " + ", ".join(f"{term} ({count})" for term, count in counts))
    return "\n".join(lines)


def format_json(feed: TopicFeed, stories, options=None) -> str:
    """Render the feed as JSON."""
    status = asdict(feed.status)
    if status['load_error'] is not None:
        status['load_error'] = str(status['load_error'])
    data = {
        'topic': feed.topic.to_dict() if feed.topic is not None else None,
        'filters': {category: list(feed.selection.get(category)) for category in FILTER_CATEGORIES},
        'status': status,
        'stories': [story.to_dict() for story in stories],
    }
    if options is not None:
        data['options'] = {category: [list(pair) for pair in counts] for category, counts in options.items()}
    return json.dumps(data, indent=2)


async def async_main(args) -> int:
    """
    Main entry point for the application.
    """
    # Explicitly reload environment variables from .env file
    load_dotenv(override=True)

    if args.config:
        load_config(args.config)

    cache = None
    if not args.no_cache:
        cache = SQLiteCacheStore()
        if args.refresh_cache:
            cache.delete(args.slug)

    source = RestContentSource(network=args.network)
    feed = TopicFeed(args.slug, source, cache=cache, network=args.network)
    try:
        try:
            await feed.start()
        except TopicNotFoundError as e:
            logger.error(f"{e}")
            return 1

        for value in args.keyword:
            feed.toggle_keyword(value)
        for value in args.landmark:
            feed.toggle_landmark(value)
        for value in args.organization:
            feed.toggle_organization(value)
        for value in args.source:
            feed.toggle_source(value)
        await feed.wait_idle()

        for _ in range(args.pages):
            if not feed.has_more:
                break
            added = await feed.load_more()
            logger.info(f"Loaded {added} more stories")

        options = None
        if args.show_filters:
            with tqdm.tqdm(desc="Indexing stories", unit="story") as pbar:
                feed.index.progress = pbar
                await feed.ensure_filter_index()
            options = feed.available_options()

        error = feed.status.load_error
        if error is not None:
            logger.error(f"Feed unavailable: {error}")
            return 1

        stories = feed.stories
        if args.limit > 0:
            stories = stories[:args.limit]
        print(format_json(feed, stories, options) if args.json else format_text(feed, stories, options))
        return 0
    finally:
        await feed.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point for the command-line script.
    """
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()]
    )
    try:
        return asyncio.run(async_main(args))
    except KeyboardInterrupt:
        logger.info("Process interrupted by user")
        return 1
    except Exception as e:
        logger.exception(f"An error occurred: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
