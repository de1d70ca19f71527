from decimal import Decimal, InvalidOperation

from django import template

register = template.Library()


@register.filter
def ars(value):
    """Formatea importes al estilo argentino: $ 1.234,56."""
    try:
        if value is None or value == "":
            value = Decimal("0")
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        value = Decimal("0")
    formatted = f"{value:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"$ {formatted}"


@register.filter
def qty(value):
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return value
    if number == number.to_integral_value():
        return str(number.quantize(Decimal("1")))
    return str(number.normalize()).replace(".", ",")
