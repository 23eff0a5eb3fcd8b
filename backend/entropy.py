# backend/entropy.py — fonte de entropia: QRNG remoto com fallback local seguro
import base64
import binascii
import logging
import math
import re
import secrets
from dataclasses import dataclass
from typing import Optional

import httpx

from .utils_fair import MAX_UINT16, UINT16_RANGE

logger = logging.getLogger(__name__)

DEV_QRNG_URL = "http://127.0.0.1:8000/api/qrng"

QRNG_BODY = {
    "encoding": "base64",
    "format": "decimal",
    "bits_per_block": 16,
    "number_of_blocks": 1,
}

# campo -> base, na ordem de prioridade
RADIX_FIELDS = (
    ("decimal", 10),
    ("hexadecimal", 16),
    ("binary", 2),
    ("octal", 8),
)

_DIGITS = {
    2: "01",
    8: "0-7",
    10: "0-9",
    16: "0-9a-fA-F",
}

# dígitos máximos de um inteiro que ainda cabe num double (< 2**1024)
_MAX_FINITE_DIGITS = {radix: math.ceil(1024 / math.log2(radix)) for radix in _DIGITS}


class QRNGError(Exception):
    """Resposta do QRNG inutilizável."""


@dataclass(frozen=True)
class Draw:
    value: int
    was_quantum: bool


def clamp_uint16(value: float) -> int:
    if isinstance(value, float) and math.isnan(value):
        return 0
    rounded = value if isinstance(value, int) else int(math.floor(value + 0.5))
    if rounded < 0:
        return 0
    if rounded > MAX_UINT16:
        return rounded % UINT16_RANGE
    return rounded


def parse_int_prefix(text: str, radix: int) -> Optional[int]:
    """Lê o inteiro no início de `text` (como parseInt): ignora lixo depois dos dígitos."""
    prefix = r"(?:0[xX])?" if radix == 16 else ""
    m = re.match(r"\s*([+-]?)" + prefix + "([" + _DIGITS[radix] + "]+)", text)
    if not m:
        return None
    digits = m.group(2).lstrip("0") or "0"
    # acima do maior double o valor é infinito e o campo não serve
    if len(digits) > _MAX_FINITE_DIGITS[radix]:
        return None
    n = int(digits, radix)
    try:
        float(n)
    except OverflowError:
        return None
    return -n if m.group(1) == "-" else n


def decode_value(value, encoding: str) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    if encoding == "raw":
        return value.strip()
    packed = "".join(value.split())
    packed += "=" * (-len(packed) % 4)
    try:
        return base64.b64decode(packed, validate=True).decode("latin-1").strip()
    except (binascii.Error, ValueError):
        return None


def read_random_number(payload) -> Optional[int]:
    """Extrai o primeiro número de uma resposta do QRNG, tentando cada base em ordem."""
    if not isinstance(payload, dict):
        return None
    numbers = payload.get("random_numbers")
    if not isinstance(numbers, list) or not numbers:
        return None
    entry = numbers[0]
    if not isinstance(entry, dict):
        return None

    encoding = payload.get("encoding") or "base64"
    for field, radix in RADIX_FIELDS:
        text = decode_value(entry.get(field), encoding)
        if text is None:
            continue
        parsed = parse_int_prefix(text, radix)
        if parsed is not None:
            return parsed
    return None


def local_uint16() -> int:
    return secrets.randbelow(UINT16_RANGE)


class EntropySource:
    """Um inteiro de 16 bits por rodada; prefere o QRNG e nunca falha."""

    def __init__(self, url: Optional[str] = None, dev: bool = False,
                 client: Optional[httpx.AsyncClient] = None, dev_url: str = DEV_QRNG_URL):
        self.url = url or (dev_url if dev else None)
        self.client = client
        self.last_draw: Optional[Draw] = None

    @property
    def remote_enabled(self) -> bool:
        return self.url is not None

    async def draw(self) -> Draw:
        result = None
        if self.remote_enabled:
            try:
                result = Draw(clamp_uint16(await self._fetch()), True)
            except Exception as exc:
                logger.warning("QRNG unavailable, using local entropy: %s", exc)
        if result is None:
            result = Draw(local_uint16(), False)
        self.last_draw = result
        return result

    async def _fetch(self) -> int:
        if self.client is not None:
            return await self._post(self.client)
        async with httpx.AsyncClient() as cli:
            return await self._post(cli)

    async def _post(self, cli: httpx.AsyncClient) -> int:
        r = await cli.post(
            self.url,
            json=QRNG_BODY,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        r.raise_for_status()
        try:
            data = r.json()
        except ValueError:
            raise QRNGError("response is not JSON")
        value = read_random_number(data)
        if value is None:
            raise QRNGError("response has no readable random number")
        return value
