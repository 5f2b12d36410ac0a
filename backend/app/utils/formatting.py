from __future__ import annotations

_UNITS = ["", "um", "dois", "três", "quatro", "cinco", "seis", "sete", "oito", "nove"]
_TEENS = ["dez", "onze", "doze", "treze", "quatorze", "quinze", "dezesseis", "dezessete", "dezoito", "dezenove"]
_TENS = ["", "", "vinte", "trinta", "quarenta", "cinquenta", "sessenta", "setenta", "oitenta", "noventa"]
_HUNDREDS = [
    "",
    "cento",
    "duzentos",
    "trezentos",
    "quatrocentos",
    "quinhentos",
    "seiscentos",
    "setecentos",
    "oitocentos",
    "novecentos",
]


def only_digits(value: str | None) -> str:
    return "".join(ch for ch in (value or "") if ch.isdigit())


def format_cpf(value: str | None) -> str:
    digits = only_digits(value)
    if len(digits) != 11:
        return value or ""
    return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"


def format_brl(cents: int) -> str:
    """1990 -> 'R$ 19,90' (separador de milhar com ponto)."""
    reais, centavos = divmod(abs(int(cents)), 100)
    grouped = f"{reais:,}".replace(",", ".")
    sign = "-" if cents < 0 else ""
    return f"{sign}R$ {grouped},{centavos:02d}"


def _below_thousand(number: int) -> str:
    if number == 100:
        return "cem"
    parts = []
    hundreds, rest = divmod(number, 100)
    if hundreds:
        parts.append(_HUNDREDS[hundreds])
    if 10 <= rest < 20:
        parts.append(_TEENS[rest - 10])
    else:
        tens, units = divmod(rest, 10)
        if tens:
            parts.append(_TENS[tens])
        if units:
            parts.append(_UNITS[units])
    return " e ".join(parts)


def number_to_words(number: int) -> str:
    """Número inteiro por extenso em português (até 999.999)."""
    number = int(number)
    if number == 0:
        return "zero"
    thousands, rest = divmod(number, 1000)
    words = []
    if thousands:
        words.append("mil" if thousands == 1 else f"{_below_thousand(thousands)} mil")
    if rest:
        words.append(_below_thousand(rest))
    if len(words) == 2 and (rest < 100 or rest % 100 == 0):
        return " e ".join(words)
    return " ".join(words)


def currency_to_words(cents: int) -> str:
    """1990 -> 'dezenove reais e noventa centavos'."""
    reais, centavos = divmod(abs(int(cents)), 100)
    parts = []
    if reais == 1:
        parts.append("um real")
    elif reais > 1:
        parts.append(f"{number_to_words(reais)} reais")
    if centavos == 1:
        parts.append("um centavo")
    elif centavos > 1:
        parts.append(f"{number_to_words(centavos)} centavos")
    return " e ".join(parts) or "zero reais"
