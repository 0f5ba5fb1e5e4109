"""jobdedup - duplicate detection for scraped job postings."""

__version__ = "0.1.0"
