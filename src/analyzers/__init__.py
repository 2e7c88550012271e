"""
Analyzers module - market structure, derivatives and risk analyzers.

Modules:
- BaseAnalyzer: common base with a bias score
- PowerLawValuationModel: BTC fair value, zones and loan sizing
- LevelDetector / LevelSmoother: support and resistance levels
- DerivativesAnalyzer: open interest and funding classification
- LiquidationZoneEstimator: long / short liquidation pools and smart stops
- PositionAnalyzer: open position risk and tactical actions
"""

from .base import BaseAnalyzer
from .derivatives import DerivativesAnalyzer, DerivativesSnapshot, OpenInterestHistory
from .level_smoothing import LevelHistory, LevelSmoother
from .levels import LevelDetector, SupportResistanceLevel
from .liquidations import LiquidationEvent, LiquidationPool, LiquidationZoneEstimator
from .positions import OpenPosition, PositionAnalysis, PositionAnalyzer, build_open_position, parse_position
from .power_law import PowerLawAnalysis, PowerLawValuationModel

__all__ = [
    'BaseAnalyzer',
    'DerivativesAnalyzer',
    'DerivativesSnapshot',
    'OpenInterestHistory',
    'LevelHistory',
    'LevelSmoother',
    'LevelDetector',
    'SupportResistanceLevel',
    'LiquidationEvent',
    'LiquidationPool',
    'LiquidationZoneEstimator',
    'OpenPosition',
    'PositionAnalysis',
    'PositionAnalyzer',
    'build_open_position',
    'parse_position',
    'PowerLawAnalysis',
    'PowerLawValuationModel',
]
