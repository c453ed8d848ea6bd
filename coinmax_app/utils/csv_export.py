import csv
import io
from typing import List, Optional, Sequence

# ── Default daily-table columns ──
CSV_COLUMNS = [
    "day", "month_idx",
    "junior_new", "senior_new",
    "junior_cum", "senior_cum",
    "junior_milestone_users", "senior_milestone_users",
    "node_payout_usdc_raw", "node_payout_usdc_capped", "payout_ar_today",
    "burn_rate", "instant_release_ar", "linear_release_ar", "released_ar_today",
    "redeemed_ar_today", "sold_ar_today",
    "lp_usdc_begin", "lp_token_begin", "lp_usdc_end", "lp_token_end",
    "amm_fee_rate", "usdc_out", "buyback_usdc", "price_end", "drawdown",
    "treasury_begin", "treasury_inflow", "treasury_outflow", "treasury_end",
    "sold_over_lp", "price_change",
]


def _cell(value) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return f"{value:.6f}"
    if value is None:
        return ""
    return str(value)


def rows_to_csv(rows: List[dict], columns: Optional[Sequence[str]] = None) -> str:
    """Render engine rows as CSV text, floats fixed at 6 decimals."""
    columns = list(columns or CSV_COLUMNS)
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow([_cell(row.get(col)) for col in columns])
    return buf.getvalue()
