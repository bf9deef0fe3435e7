"""CV-Harvester: scraping job orchestration for the referral marketplace CV corpus."""

__version__ = "0.1.0"

__all__ = ["__version__"]
