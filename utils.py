import logging
import re
import sys
from datetime import datetime
from typing import List, Optional, Tuple

# Import the centralized settings object
from config import settings


def setup_logger():
    """Configures and returns a logger based on settings."""
    logger = logging.getLogger("TradeFlow")
    log_level_int = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logger.setLevel(log_level_int)

    if logger.hasHandlers():
        logger.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(log_level_int)

    log_file_path = settings.LOG_FILE
    # Ensure log directory exists
    log_file_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file_path, mode='a')
    file_handler.setLevel(log_level_int)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(processName)s - %(threadName)s - %(message)s'
    )
    stdout_handler.setFormatter(formatter)
    file_handler.setFormatter(formatter)

    logger.addHandler(stdout_handler)
    logger.addHandler(file_handler)
    return logger


# Initialize logger (it will now use settings)
log = setup_logger()

_CAMEL_BOUNDARY = re.compile(r'([a-z0-9])([A-Z])')
_AMOUNT_PATTERN = re.compile(r'\d[\d,]*(?:\.\d+)?|\.\d+')
_INTEGER_PATTERN = re.compile(r'\d+')


def key_tokens(key: str) -> List[str]:
    """
    Splits a field key into lower-case word tokens.
    'B/L No.' -> ['bl', 'no'], 'invoiceNumber' -> ['invoice', 'number'], 'total_amount' -> ['total', 'amount']
    """
    spaced = _CAMEL_BOUNDARY.sub(r'\1 \2', key or "")
    # Abbreviations like B/L and A.W.B collapse into one token
    spaced = re.sub(r'(?<=\b\w)[/.](?=\w\b)', '', spaced)
    return re.findall(r'[a-z0-9]+', spaced.lower())


def key_matches(key: str, token_groups: List[List[str]]) -> bool:
    """True when every token of any group appears in the key. No groups matches everything."""
    if not token_groups:
        return True
    tokens = set(key_tokens(key))
    return any(group and all(token in tokens for token in group) for group in token_groups)


def parse_amount(text: Optional[str]) -> Optional[float]:
    """
    Parses the numeric part of an amount string such as 'USD 12,500.00' or '€ 1,200'.
    Returns None when no number is present.
    """
    if not text:
        return None
    match = _AMOUNT_PATTERN.search(str(text))
    if not match:
        return None
    try:
        return float(match.group(0).replace(',', ''))
    except ValueError:
        log.debug(f"Could not parse amount from '{text}'")
        return None


def leading_integer(text: Optional[str]) -> Optional[int]:
    """First whole number in the text: '90 days' -> 90, '180' -> 180. None when there is none."""
    if not text:
        return None
    match = _INTEGER_PATTERN.search(str(text))
    return int(match.group(0)) if match else None


def detect_currency(text: Optional[str]) -> Optional[str]:
    """Detects a currency code from keywords in the text, or None when nothing matches."""
    if not text:
        return None
    lowered = str(text).lower()
    for code, keywords in settings.CURRENCY_KEYWORDS.items():
        for keyword in keywords:
            if keyword.isalpha():
                if re.search(rf'(?<![a-z]){re.escape(keyword)}(?![a-z])', lowered):
                    return code
            elif keyword in lowered:
                return code
    return None


def convert_to_aed(amount: float, currency: str) -> Tuple[float, float]:
    """Returns (amount in AED, rate used) from the static rate table. Unknown currencies convert at 1."""
    rate = settings.AED_EXCHANGE_RATES.get(currency.upper(), 1.0)
    return round(amount * rate, 2), rate


def format_amount(amount: float) -> str:
    return f"{amount:,.2f}"


def format_date(value: datetime) -> str:
    return value.strftime(settings.TEMPLATE_DATE_FORMAT)
