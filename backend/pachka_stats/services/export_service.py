import csv
import io
import logging
from datetime import datetime

from pachka_stats.models.schemas import AnalyticsResult

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = ["Date", "Message", "Reads", "Reactions", "Comments", "ER (%)", "Msg ID", "Chat ID"]


def export_filename(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"analytics_{now.strftime('%d-%m-%Y_%H-%M')}.csv"


def export_message_stats_csv(result: AnalyticsResult) -> str:
    """Render the per-message table of an analytics result as CSV"""
    if not result.message_stats:
        raise ValueError("No message statistics to export")

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
    writer.writeheader()
    for stat in result.message_stats:
        writer.writerow({
            "Date": stat.date.strftime("%d.%m.%Y %H:%M"),
            "Message": stat.text,
            "Reads": stat.reader_count,
            "Reactions": stat.reaction_count,
            "Comments": stat.thread_reply_count,
            "ER (%)": f"{stat.er:.2f}",
            "Msg ID": stat.id,
            "Chat ID": stat.chat_id if stat.chat_id is not None else "",
        })

    logger.info(f"Exported {len(result.message_stats)} message rows")
    return buffer.getvalue()
