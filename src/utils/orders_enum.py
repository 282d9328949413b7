from enum import Enum

class Product(Enum):
    I = "I"  # Intraday (MIS - Margin Intraday Square-off)
    D = "D"  # Delivery (CNC - Cash and Carry)
    CO = "CO"  # Cover Order
    NRML = "NRML"  # Normal (for derivatives, no leverage)

class Validity(Enum):
    DAY = "DAY"  # Order valid for the entire trading day
    IOC = "IOC"  # Immediate or Cancel (executes immediately or gets cancelled)

class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

class OrderMethod(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"

class TradingMode(str, Enum):
    PAPER = "PAPER"
    LIVE = "LIVE"

# Product types accepted by the order validator, mapped to the broker's product codes
PRODUCT_TYPES = {
    "INTRADAY": Product.I,
    "CNC": Product.D,
    "MARGIN": Product.NRML,
    "CO": Product.CO,
    "BO": Product.I,
    "MTF": Product.D,
}
