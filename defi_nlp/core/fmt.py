from __future__ import annotations


def fmt_usd(v: float) -> str:
    """Human-readable dollar value for summary text: $68.1k, $1.23M, $142.3"""
    if v >= 1_000_000:
        return f"${v / 1_000_000:.2f}M"
    if v >= 10_000:
        return f"${v / 1_000:.1f}k"
    if v >= 1_000:
        return f"${v / 1_000:.2f}k"
    if v >= 100:
        return f"${v:.1f}"
    if v >= 1:
        return f"${v:.2f}"
    return f"${v:.4f}"


def fmt_amount(v: float) -> str:
    """Token amount for validation messages: grouped, no trailing zeros"""
    if v == int(v) and abs(v) < 1e15:
        return f"{int(v):,}"
    if abs(v) >= 1:
        return f"{v:,.4f}".rstrip("0").rstrip(".")
    return f"{v:.8f}".rstrip("0").rstrip(".")


def fmt_number(v: float) -> str:
    """Canonical plain string for a normalized entity value: 1000, 2.5, 0.125"""
    if v == int(v) and abs(v) < 1e18:
        return str(int(v))
    return f"{v:.10f}".rstrip("0").rstrip(".")
