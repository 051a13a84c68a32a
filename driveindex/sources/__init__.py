from .index_scraper import IndexScraper, ScrapeReport, resolve_episode_number

__all__ = [
    "IndexScraper",
    "ScrapeReport",
    "resolve_episode_number",
]
