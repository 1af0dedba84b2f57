"""Generate realistic fake page views for development and demos.

Writes straight to the database through the ingestor so timestamps can be
spread over past days.

Usage:
    python -m scripts.seed_pageviews [--count 1000] [--days 30]
    python -m scripts.seed_pageviews --count 20000 --days 180 --batch-size 500
"""

import argparse
import asyncio
import random
from datetime import datetime, timedelta, timezone

from portfolio_analytics.db.session import AsyncSessionLocal
from portfolio_analytics.schemas.tracking import PageViewEvent, VisitorInfo
from portfolio_analytics.services.ingest_service import ingest_many
from portfolio_analytics.services.visitor_service import derive_page_title, parse_user_agent

PAGES = [
    ("/", 30),
    ("/projects", 20),
    ("/projects/analytics-engine", 8),
    ("/projects/portfolio-site", 6),
    ("/about", 12),
    ("/contact", 6),
    ("/resume", 8),
    ("/blog", 5),
    ("/blog/async-python", 3),
]

REFERRERS = [
    "https://google.com",
    "https://github.com",
    "https://linkedin.com",
    "https://news.ycombinator.com",
    None,
    None,
    None,
]

LOCATIONS = [
    ("United States", "New York"),
    ("United States", "San Francisco"),
    ("Germany", "Berlin"),
    ("United Kingdom", "London"),
    ("India", "Bengaluru"),
    ("Canada", "Toronto"),
    (None, None),
]

USER_AGENTS = [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
    "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:121.0) Gecko/20100101 Firefox/121.0",
]


def _visitor(index: int) -> VisitorInfo:
    user_agent = random.choice(USER_AGENTS)
    device, browser = parse_user_agent(user_agent)
    country, city = random.choice(LOCATIONS)
    return VisitorInfo(
        user_agent=user_agent,
        ip_address=f"203.0.113.{index % 250 + 1}",
        device=device,
        browser=browser,
        country=country,
        city=city,
    )


def generate_page_views(count: int, days: int) -> list[tuple[PageViewEvent, VisitorInfo]]:
    """Fake page views grouped into sessions of 1-6 views, oldest first."""
    now = datetime.now(timezone.utc)
    urls = [p[0] for p in PAGES]
    weights = [p[1] for p in PAGES]
    items: list[tuple[PageViewEvent, VisitorInfo]] = []

    session_index = 0
    while len(items) < count:
        session_id = f"seed_{session_index:06d}"
        visitor = _visitor(session_index)
        ts = now - timedelta(seconds=random.randint(0, days * 86400))
        referrer = random.choice(REFERRERS)

        for _ in range(min(random.randint(1, 6), count - len(items))):
            url = random.choices(urls, weights=weights, k=1)[0]
            items.append(
                (
                    PageViewEvent(
                        page_url=url,
                        session_id=session_id,
                        page_title=derive_page_title(url),
                        referrer=referrer,
                        occurred_at=min(ts, now),
                    ),
                    visitor,
                )
            )
            referrer = None
            ts += timedelta(seconds=random.randint(5, 240))
        session_index += 1

    items.sort(key=lambda item: item[0].occurred_at)
    return items


async def seed(count: int, days: int, batch_size: int) -> None:
    print(f"Generating {count} page views over {days} days...")
    items = generate_page_views(count, days)
    result = await ingest_many(AsyncSessionLocal, items, batch_size)
    print(f"Done! Stored {result.processed}/{result.total} page views ({result.failed} failed).")


def main():
    parser = argparse.ArgumentParser(description="Seed analytics page views")
    parser.add_argument("--count", type=int, default=1000, help="Number of page views")
    parser.add_argument("--days", type=int, default=30, help="Days of history")
    parser.add_argument("--batch-size", type=int, default=100, help="Page views per commit")
    args = parser.parse_args()
    asyncio.run(seed(args.count, args.days, args.batch_size))


if __name__ == "__main__":
    main()
