class MalformedInstruction(Exception):
    """Raised when an agent reply line is not a recognizable buy/sell instruction."""
    pass

class UnresolvedPriceError(Exception):
    """Raised when a new position is bought without a current price to size it."""

    def __init__(self, subject, address=None):
        self.subject = subject
        self.address = address
        super().__init__(f"No current price for {subject} (address: {address})")

class FeedUnavailable(Exception):
    """Raised when the price feed or the agent cannot be reached."""
    pass

class PersistenceError(Exception):
    """Raised when the portfolio file cannot be read or written."""
    pass

class MissingQuoteAsset(Exception):
    """Raised when the portfolio has no row for the quote asset."""
    pass

class CycleInProgress(Exception):
    """Raised when a trading cycle starts while another one holds the portfolio."""
    pass

class ConfigError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass
