"""
收货地址解析

按优先级逐字段回退：
1. 结构化字段（shipping_street / shipping_number / shipping_city / shipping_postal_code）
2. 自由文本地址（customer_address）解析
3. 省份代码：显式代码 → 省份名称查表 → 邮编区间推断 → 默认布宜诺斯艾利斯省
"""
import re
import unicodedata
from dataclasses import dataclass
from typing import Optional

DEFAULT_STREET_NUMBER = "S/N"  # sin número
DEFAULT_POSTAL_CODE = "1611"
DEFAULT_CITY = "Buenos Aires"
DEFAULT_PROVINCE_CODE = "B"

# 阿根廷省份代码（Correo Argentino 使用的 ISO 3166-2:AR 字母）
PROVINCE_CODES = {
    "A": "Salta",
    "B": "Buenos Aires",
    "C": "Ciudad Autónoma de Buenos Aires",
    "D": "San Luis",
    "E": "Entre Ríos",
    "F": "La Rioja",
    "G": "Santiago del Estero",
    "H": "Chaco",
    "J": "San Juan",
    "K": "Catamarca",
    "L": "La Pampa",
    "M": "Mendoza",
    "N": "Misiones",
    "P": "Formosa",
    "Q": "Neuquén",
    "R": "Río Negro",
    "S": "Santa Fe",
    "T": "Tucumán",
    "U": "Chubut",
    "V": "Tierra del Fuego",
    "W": "Corrientes",
    "X": "Córdoba",
    "Y": "Jujuy",
    "Z": "Santa Cruz",
}

# 常见别名（已规范化）
PROVINCE_ALIASES = {
    "caba": "C",
    "capital federal": "C",
    "capital": "C",
    "ciudad de buenos aires": "C",
    "ciudad autonoma de buenos aires": "C",
    "provincia de buenos aires": "B",
    "bs as": "B",
    "bs. as.": "B",
    "bsas": "B",
    "gba": "B",
    "tierra del fuego, antartida e islas del atlantico sur": "V",
}

# 邮编数字区间 → 省份代码
POSTAL_RANGES = (
    (1000, 1499, "C"),
    (2000, 2999, "S"),
    (5000, 5999, "X"),
)

_STREET_TRAILING_NUMBER = re.compile(r"^(.+?)\s+(\d+)$")
_STREET_FIRST_NUMBER = re.compile(r"^(.+?)\s+(\d+)\b")
_POSTAL_CODE = re.compile(r"\b(\d{4})\b")


@dataclass
class ParsedAddress:
    """自由文本地址解析结果"""
    street_name: str
    street_number: str
    city: str
    postal_code: str


@dataclass
class ResolvedAddress:
    """快递可用的收货地址"""
    street_name: str
    street_number: str
    city: str
    postal_code: str
    province_code: str
    floor: Optional[str] = None
    apartment: Optional[str] = None
    source: str = "structured"

    @property
    def is_complete(self) -> bool:
        return bool(self.street_name and self.city and self.postal_code)


def normalize_name(value: str) -> str:
    """去除重音并统一大小写"""
    decomposed = unicodedata.normalize("NFD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.casefold().split())


_PROVINCE_BY_NAME = {normalize_name(name): code for code, name in PROVINCE_CODES.items()}
_PROVINCE_BY_NAME.update(PROVINCE_ALIASES)


def province_code_from_name(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    return _PROVINCE_BY_NAME.get(normalize_name(name))


def province_code_from_postal(postal_code: Optional[str]) -> str:
    """邮编区间推断，未命中时归入布宜诺斯艾利斯省"""
    match = _POSTAL_CODE.search(postal_code or "")
    if not match:
        return DEFAULT_PROVINCE_CODE
    number = int(match.group(1))
    for low, high, code in POSTAL_RANGES:
        if low <= number <= high:
            return code
    return DEFAULT_PROVINCE_CODE


def resolve_province_code(
    code: Optional[str],
    name: Optional[str],
    postal_code: Optional[str]
) -> str:
    """省份代码级联解析"""
    if code and code.strip().upper() in PROVINCE_CODES:
        return code.strip().upper()
    return province_code_from_name(name) or province_code_from_postal(postal_code)


def normalize_postal_code(value: Optional[str]) -> Optional[str]:
    """从 CPA（如 C1043AAZ）或普通邮编中提取 4 位数字"""
    if not value:
        return None
    match = re.search(r"(\d{4})", value)
    return match.group(1) if match else None


def parse_free_text_address(text: Optional[str]) -> ParsedAddress:
    """
    解析自由文本地址

    "Av. Corrientes 1234, CABA" → street_name="Av. Corrientes", street_number="1234"
    "Calle Sin Numero, Ciudad" → street_number="S/N"
    """
    text = text or ""
    parts = [part.strip() for part in text.split(",")]
    street_part = parts[0] if parts else ""

    match = _STREET_TRAILING_NUMBER.match(street_part) or _STREET_FIRST_NUMBER.match(street_part)
    if match:
        street_name, street_number = match.group(1).strip(), match.group(2)
    else:
        street_name, street_number = street_part, DEFAULT_STREET_NUMBER

    # 城市取第 4 段或第 2 段，去掉夹带的邮编
    city_part = ""
    if len(parts) > 3 and parts[3]:
        city_part = parts[3]
    elif len(parts) > 1:
        city_part = parts[1]
    city = " ".join(_POSTAL_CODE.sub(" ", city_part).split()) or DEFAULT_CITY

    # 在整段地址中取第一个 4 位数字（4 位门牌号会被当作邮编）
    postal_match = _POSTAL_CODE.search(text)
    postal_code = postal_match.group(1) if postal_match else DEFAULT_POSTAL_CODE

    return ParsedAddress(
        street_name=street_name,
        street_number=street_number,
        city=city,
        postal_code=postal_code,
    )


def resolve_address(order) -> ResolvedAddress:
    """根据订单快照生成快递地址"""
    parsed: Optional[ParsedAddress] = None

    def free_text() -> ParsedAddress:
        nonlocal parsed
        if parsed is None:
            parsed = parse_free_text_address(order.customer_address)
        return parsed

    source = "structured"
    street_name = (order.shipping_street or "").strip()
    street_number = (order.shipping_number or "").strip()
    if not street_name:
        source = "free_text"
        street_name = free_text().street_name
        street_number = street_number or free_text().street_number
    street_number = street_number or DEFAULT_STREET_NUMBER

    city = (order.shipping_city or "").strip()
    if not city:
        city = free_text().city if order.customer_address else DEFAULT_CITY

    postal_code = normalize_postal_code(order.shipping_postal_code)
    if not postal_code:
        postal_code = free_text().postal_code

    province_code = resolve_province_code(
        order.shipping_province_code,
        order.shipping_province,
        postal_code
    )

    return ResolvedAddress(
        street_name=street_name,
        street_number=street_number,
        city=city,
        postal_code=postal_code,
        province_code=province_code,
        floor=(order.shipping_floor or None),
        apartment=(order.shipping_apartment or None),
        source=source,
    )
