import unicodedata

# Provider spellings for cities whose common name differs
_CITY_ALIASES = {
    "sao paulo": "Sao Paulo",
    "florianopolis": "Florianopolis",
    "buzios": "Armacao dos Buzios",
    "brasilia": "Brasilia",
    "belem": "Belem",
    "sao luis": "Sao Luis",
}

_STATE_CODES = {
    "sao paulo": "SP",
    "rio de janeiro": "RJ",
    "salvador": "BA",
    "florianopolis": "SC",
    "buzios": "RJ",
    "armacao dos buzios": "RJ",
    "brasilia": "DF",
    "belo horizonte": "MG",
    "porto alegre": "RS",
    "recife": "PE",
    "fortaleza": "CE",
    "manaus": "AM",
    "curitiba": "PR",
    "belem": "PA",
    "goiania": "GO",
    "guarulhos": "SP",
    "campinas": "SP",
    "sao luis": "MA",
    "maceio": "AL",
    "natal": "RN",
    "campo grande": "MS",
}


def strip_accents(text: str) -> str:
    nfkd = unicodedata.normalize("NFKD", text)
    return "".join(c for c in nfkd if not unicodedata.combining(c))


def _key(text: str) -> str:
    return " ".join(strip_accents(text).lower().split())


def normalize_city_name(city: str) -> str:
    """Return the partner provider's spelling of a city name."""
    key = _key(city)
    if key in _CITY_ALIASES:
        return _CITY_ALIASES[key]
    return " ".join(strip_accents(city).split())


def city_state_code(city: str) -> str | None:
    return _STATE_CODES.get(_key(city))
