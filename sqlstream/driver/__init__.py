"""Statement execution surface."""

from sqlstream.driver.session import Session

__all__ = ("Session",)
