"""
utils/messages.py
-----------------
User-facing reply texts per language and locale-aware money formatting.
"""

from decimal import Decimal

from config import CURRENCY_EXPONENT, DEFAULT_CURRENCY, DEFAULT_LANGUAGE

_CURRENCY_SYMBOLS = {"IDR": "Rp", "USD": "$", "EUR": "€", "SGD": "S$", "MYR": "RM"}

MESSAGES: dict[str, dict[str, str]] = {
    "id": {
        "not_understood": "Maaf, saya tidak mengerti pesan Anda. Silakan coba lagi dengan format yang benar.",
        "processing_error": "Maaf, terjadi kesalahan dalam memproses pesan Anda.",
        "amount_unparsed": "Maaf, saya tidak bisa membaca jumlahnya. Contoh: \"beli makan 50.000\".",
        "category_missing": "Sebutkan kategorinya. Contoh: \"atur budget makan 2jt\".",
        "transaction_failed": "Maaf, terjadi kesalahan dalam mencatat transaksi.",
        "income_recorded": "✅ Pemasukan sebesar {amount} telah dicatat ({category}).",
        "expense_recorded": "✅ Pengeluaran sebesar {amount} telah dicatat ({category}).",
        "no_active_budget": "📭 Tidak ada budget aktif. Buat budget terlebih dahulu.",
        "budget_set": "✅ Batas kategori \"{category}\" pada budget \"{budget}\" diatur ke {amount}.",
        "budget_header": "💰 {name} ({start} → {end})",
        "budget_total": "Total: {spent} / {limit} ({pct:.0f}%)",
        "budget_remaining": "Sisa: {remaining}",
        "budget_line": "  {icon} {category}: {spent} / {limit} ({pct:.0f}%)",
        "alert_overall_medium": "🟡 Budget \"{budget}\" sudah terpakai {pct:.1f}%.",
        "alert_overall_high": "🔴 Budget \"{budget}\" terlampaui! ({pct:.1f}%)",
        "alert_category_medium": "🟡 Kategori \"{category}\" sudah {pct:.1f}% dari batas.",
        "alert_category_high": "🔴 Kategori \"{category}\" melebihi batas! ({pct:.1f}%)",
        "report_empty": "📭 Tidak ada transaksi untuk {period}.",
        "report_header": "📊 Laporan {period} ({start} → {end})",
        "report_income": "🟢 Pemasukan: {amount}",
        "report_expense": "🔴 Pengeluaran: {amount}",
        "report_net": "📈 Selisih: {amount}",
        "report_categories": "📂 Pengeluaran per kategori:",
        "report_category_line": "  • {category}: {amount} ({pct:.0f}%)",
        "period_daily": "hari ini",
        "period_weekly": "minggu ini",
        "period_monthly": "bulan ini",
        "rate_limited": "⚠️ Anda mengirim terlalu banyak pesan. Tunggu sebentar lalu coba lagi.",
        "paired": "✅ Akun terhubung. Kirim transaksi Anda, misalnya \"beli makan 50.000\".",
        "pairing_invalid": "⚠️ Tautan pemasangan tidak valid atau sudah kedaluwarsa.",
    },
    "en": {
        "not_understood": "Sorry, I didn't understand your message. Please try again in the right format.",
        "processing_error": "Sorry, something went wrong while processing your message.",
        "amount_unparsed": "Sorry, I couldn't read the amount. Example: \"lunch 50,000\".",
        "category_missing": "Please name the category. Example: \"set budget food 2,000,000\".",
        "transaction_failed": "Sorry, something went wrong while recording the transaction.",
        "income_recorded": "✅ Income of {amount} recorded ({category}).",
        "expense_recorded": "✅ Expense of {amount} recorded ({category}).",
        "no_active_budget": "📭 You have no active budget. Create one first.",
        "budget_set": "✅ Limit for \"{category}\" in budget \"{budget}\" set to {amount}.",
        "budget_header": "💰 {name} ({start} → {end})",
        "budget_total": "Total: {spent} / {limit} ({pct:.0f}%)",
        "budget_remaining": "Remaining: {remaining}",
        "budget_line": "  {icon} {category}: {spent} / {limit} ({pct:.0f}%)",
        "alert_overall_medium": "🟡 Budget \"{budget}\" is at {pct:.1f}%.",
        "alert_overall_high": "🔴 Budget \"{budget}\" exceeded! ({pct:.1f}%)",
        "alert_category_medium": "🟡 Category \"{category}\" is at {pct:.1f}% of its limit.",
        "alert_category_high": "🔴 Category \"{category}\" is over its limit! ({pct:.1f}%)",
        "report_empty": "📭 No transactions {period}.",
        "report_header": "📊 Report for {period} ({start} → {end})",
        "report_income": "🟢 Income: {amount}",
        "report_expense": "🔴 Expenses: {amount}",
        "report_net": "📈 Net: {amount}",
        "report_categories": "📂 Expenses by category:",
        "report_category_line": "  • {category}: {amount} ({pct:.0f}%)",
        "period_daily": "today",
        "period_weekly": "this week",
        "period_monthly": "this month",
        "rate_limited": "⚠️ You're sending too many messages. Wait a moment and try again.",
        "paired": "✅ Account linked. Send your transactions, e.g. \"lunch 50,000\".",
        "pairing_invalid": "⚠️ This pairing link is invalid or has expired.",
    },
}


def t(language: str, key: str, **kwargs) -> str:
    """Look up a reply text, falling back to the default language."""
    catalog = MESSAGES.get(language) or MESSAGES[DEFAULT_LANGUAGE]
    template = catalog.get(key) or MESSAGES[DEFAULT_LANGUAGE][key]
    return template.format(**kwargs)


def format_money(
    amount: int,
    language: str = DEFAULT_LANGUAGE,
    currency: str = DEFAULT_CURRENCY,
    signed: bool = False,
) -> str:
    """
    Render minor units as e.g. 'Rp50.000' (id) or 'Rp50,000' (en).

    With `signed`, positive amounts get a leading '+'.
    """
    value = Decimal(abs(amount)) / (Decimal(10) ** CURRENCY_EXPONENT)
    text = f"{value:,.{CURRENCY_EXPONENT}f}"
    if language == "id":
        text = text.replace(",", "_").replace(".", ",").replace("_", ".")
    symbol = _CURRENCY_SYMBOLS.get(currency, currency + " ")
    sign = "-" if amount < 0 else ("+" if signed and amount > 0 else "")
    return f"{sign}{symbol}{text}"
