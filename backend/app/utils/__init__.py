from app.utils.email_validation import normalize_email
from app.utils.formatting import currency_to_words, format_brl, format_cpf, number_to_words, only_digits

__all__ = [
    "currency_to_words",
    "format_brl",
    "format_cpf",
    "normalize_email",
    "number_to_words",
    "only_digits",
]
