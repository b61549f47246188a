from .periods import month_abbreviation, normalize_month, quarter_number

__all__ = ["month_abbreviation", "normalize_month", "quarter_number"]
