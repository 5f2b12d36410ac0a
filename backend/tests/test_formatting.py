from datetime import date

from app.services.contract import ContractRenderer
from app.utils.email_validation import normalize_email
from app.utils.formatting import currency_to_words, format_brl, format_cpf, number_to_words

import pytest


def test_format_cpf_and_brl():
    assert format_cpf("12345678909") == "123.456.789-09"
    assert format_cpf("123") == "123"
    assert format_brl(19990) == "R$ 199,90"
    assert format_brl(123456789) == "R$ 1.234.567,89"


@pytest.mark.parametrize(
    "value, words",
    [
        (0, "zero"),
        (12, "doze"),
        (50, "cinquenta"),
        (100, "cem"),
        (199, "cento e noventa e nove"),
        (1000, "mil"),
        (2500, "dois mil e quinhentos"),
    ],
)
def test_number_to_words(value, words):
    assert number_to_words(value) == words


def test_currency_to_words():
    assert currency_to_words(19990) == "cento e noventa e nove reais e noventa centavos"
    assert currency_to_words(101) == "um real e um centavo"
    assert currency_to_words(0) == "zero reais"


def test_normalize_email_rejects_malformed_addresses():
    assert normalize_email(" Maria@Example.com ") == "maria@example.com"
    with pytest.raises(ValueError):
        normalize_email("maria-sem-arroba")
    with pytest.raises(ValueError):
        normalize_email("")


def test_contract_renderer_fills_clauses():
    html = ContractRenderer().render(
        {
            "full_name": "Maria da Silva",
            "cpf": "12345678909",
            "address": "Av. Brasil",
            "city": "Umuarama",
            "state": "PR",
            "zipcode": "87501-000",
        },
        {"name": "MedPass Familiar", "price_cents": 19990},
        today=date(2026, 3, 5),
    )

    assert "Maria da Silva" in html
    assert "123.456.789-09" in html
    assert "R$ 199,90" in html
    assert "cento e noventa e nove reais e noventa centavos" in html
    assert "(<strong>doze</strong>) meses" in html
    assert "cinquenta por cento" in html
    assert "05 de março de 2026" in html
    assert "Umuarama/PR" in html
