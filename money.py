def format_currency(cents: int, *, symbol: str = "R$") -> str:
    sign = "-" if cents < 0 else ""
    body = f"{abs(cents) / 100:,.2f}".replace(",", " ").replace(".", ",")
    return f"{sign}{symbol} {body.replace(' ', '.')}"


def split_evenly(total_cents: int, parts: int) -> list[int]:
    """
    Split a total into `parts` amounts that sum back to the total exactly.
    Leftover cents go to the earliest parts, one each.
    """
    if parts < 1:
        raise ValueError("Cannot split into fewer than one part")
    base, remainder = divmod(total_cents, parts)
    return [base + 1 if idx < remainder else base for idx in range(parts)]
