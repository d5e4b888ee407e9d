"""Copy Sizing Strategies.

Implements EXACT, SCALED, PERCENTAGE and ADAPTIVE replication of a detected
trade's price and size.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from polycopy.detection.trades import Side
from polycopy.errors import ConfigurationError

logger = structlog.get_logger(__name__)

# Venue fee applied when bumping orders up to the minimum value
FEE_RATE = 0.02


class CopyStrategy(str, Enum):
    """Available copy strategies."""
    EXACT = "exact"
    SCALED = "scaled"
    PERCENTAGE = "percentage"
    ADAPTIVE = "adaptive"


@dataclass(frozen=True)
class OrderParams:
    """A replica order ready for the executor."""
    token_id: str
    price: float
    size: float
    side: Side

    @property
    def value(self) -> float:
        return self.price * self.size


@dataclass
class StrategyConfig:
    strategy: CopyStrategy = CopyStrategy.EXACT
    scale_factor: float = 1.0
    percentage_of_balance: float = 0.0
    max_slippage: Optional[float] = None
    min_order_value: Optional[float] = None
    current_balance: Optional[float] = None
    current_market_price: Optional[float] = None


class PositionSizer:
    """Calculates replica order parameters for the configured strategy."""

    def __init__(self, config: dict):
        self.config = config
        self.strategy = self._parse_strategy(config.get("copy_strategy", "exact"))
        self.scale_factor = config.get("scale_factor", 1.0)
        self.percentage_of_balance = config.get("percentage_of_balance", 0.0)
        self.max_slippage = config.get("risk", {}).get("max_slippage")
        self.min_order_value = config.get("min_order_value")

        logger.info("position_sizer_initialized", strategy=self.strategy.value)

    @staticmethod
    def _parse_strategy(name) -> CopyStrategy:
        try:
            return CopyStrategy(name)
        except ValueError:
            raise ConfigurationError(
                f"Unknown copy strategy {name!r}; expected one of "
                + ", ".join(s.value for s in CopyStrategy)
            ) from None

    def strategy_config(self, overrides: Optional[dict] = None) -> StrategyConfig:
        """Strategy settings with per-wallet overrides applied."""
        overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
        strategy = overrides.get("copy_strategy", self.strategy)
        return StrategyConfig(
            strategy=self._parse_strategy(strategy),
            scale_factor=overrides.get("scale_factor", self.scale_factor),
            percentage_of_balance=overrides.get("percentage_of_balance", self.percentage_of_balance),
            max_slippage=overrides.get("max_slippage", self.max_slippage),
            min_order_value=self.min_order_value,
        )

    def calculate_order(
        self,
        token_id: str,
        price: float,
        size: float,
        side: Side,
        config: StrategyConfig
    ) -> OrderParams:
        """Calculate the replica order.

        Args:
            token_id: Outcome token being traded
            price: Source trade price (USD)
            size: Source trade size (tokens)
            side: Source trade side
            config: Resolved strategy settings, including balance and
                market price where the strategy needs them

        Returns:
            OrderParams with a positive price and size

        Raises:
            ConfigurationError: invalid strategy parameters, or the result
                has a non-positive price or size
        """
        if config.strategy == CopyStrategy.EXACT:
            new_price, new_size = price, size
        elif config.strategy == CopyStrategy.SCALED:
            new_price, new_size = self._scaled(price, size, config)
        elif config.strategy == CopyStrategy.PERCENTAGE:
            new_price, new_size = self._percentage(price, config)
        else:
            new_price, new_size = self._adaptive(price, size, side, config)

        if config.min_order_value and new_price > 0:
            new_size = self._apply_min_order_value(new_price, new_size, config.min_order_value)

        if new_price <= 0 or new_size <= 0:
            raise ConfigurationError(
                f"{config.strategy.value} strategy produced a non-positive order "
                f"(token={token_id}, price={new_price}, size={new_size})"
            )

        logger.debug(
            "order_sized",
            strategy=config.strategy.value,
            source_price=price,
            source_size=size,
            price=new_price,
            size=new_size
        )
        return OrderParams(token_id=token_id, price=new_price, size=new_size, side=side)

    def _scaled(self, price: float, size: float, config: StrategyConfig) -> tuple[float, float]:
        """Copy a fixed fraction of the source size.

        Example: source buys 100 tokens with scale_factor=0.01, we buy 1.
        """
        factor = config.scale_factor
        if not isinstance(factor, (int, float)) or not 0 < factor <= 1:
            raise ConfigurationError(f"scale_factor must be in (0, 1], got {factor!r}")
        return price, size * factor

    def _percentage(self, price: float, config: StrategyConfig) -> tuple[float, float]:
        """Spend a fixed share of our balance at the source price."""
        if price <= 0:
            return price, 0.0
        order_value = (config.current_balance or 0) * (config.percentage_of_balance or 0)
        return price, order_value / price

    def _adaptive(
        self,
        price: float,
        size: float,
        side: Side,
        config: StrategyConfig
    ) -> tuple[float, float]:
        """Clamp the price toward the current market when the source price
        has drifted more than max_slippage away from it."""
        market = config.current_market_price
        max_slippage = config.max_slippage
        if not market or not max_slippage:
            return price, size

        slippage = abs(market - price) / market
        if slippage <= max_slippage:
            return price, size

        if side == Side.BUY:
            clamped = market * (1 + max_slippage * 0.5)
        else:
            clamped = market * (1 - max_slippage * 0.5)

        logger.debug(
            "adaptive_price_clamped",
            source_price=price,
            market_price=market,
            slippage=slippage,
            price=clamped
        )
        return clamped, size

    @staticmethod
    def _apply_min_order_value(price: float, size: float, min_value: float) -> float:
        if price * size * (1 + FEE_RATE) >= min_value:
            return size
        return (min_value / (1 + FEE_RATE)) / price
