"""Exception hierarchy shared by detection and decision."""

from typing import Optional


class CopyTraderError(Exception):
    """Base class for all copy-trader errors."""


class ConfigurationError(CopyTraderError):
    """Invalid address, strategy parameter or computed order."""

    def __init__(self, message: str, address: Optional[str] = None):
        super().__init__(message)
        self.address = address


class ChainQueryError(CopyTraderError):
    """An RPC call against the chain failed."""

    def __init__(
        self,
        message: str,
        contract: Optional[str] = None,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None
    ):
        context = []
        if contract:
            context.append(f"contract={contract}")
        if from_block is not None:
            context.append(f"blocks={from_block}-{to_block}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)
        self.contract = contract
        self.from_block = from_block
        self.to_block = to_block


class DecodeError(CopyTraderError):
    """A log did not match the shape of any known event."""


class MarketDataUnavailable(CopyTraderError):
    """Metadata, balance or price lookup returned nothing usable."""

    def __init__(self, message: str, token_id: Optional[str] = None):
        super().__init__(message)
        self.token_id = token_id


class ExecutionError(CopyTraderError):
    """The order executor explicitly rejected or failed an order."""

    def __init__(self, message: str, params=None, response=None):
        if params is not None:
            message = (
                f"{message} (token={params.token_id}, side={params.side}, "
                f"size={params.size}, price={params.price})"
            )
        super().__init__(message)
        self.params = params
        self.response = response
