"""
Run the Intention Detector over a sequence of learner messages.

Messages are fed to ONE detector in order, like turns of a single conversation,
so the sticky category carries over between lines. No database needed.

Usage:
    python cli/detect.py "OPEN" "I liked the agenda setting" "ok"
    python cli/detect.py --file messages.txt --no-llm
"""

import asyncio
import argparse
import logging
import sys
from pathlib import Path
from typing import List

# Add project root to Python path
project_root = Path(__file__).resolve().parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from mirs_coach.config.categories import category_label
from mirs_coach.config.settings import load_settings
from mirs_coach.intention_detector import IntentionDetector
from mirs_coach.models.detection import ConversationTurn

load_dotenv()

logging.basicConfig(
    level=logging.WARNING,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

console = Console()


def read_messages(args) -> List[str]:
    messages = list(args.messages)
    if args.file:
        with open(args.file, 'r', encoding='utf-8') as f:
            messages.extend(line.rstrip("\n") for line in f if line.strip())
    return messages


async def run(messages: List[str], use_llm_fallback: bool, max_history_chars: int):
    detector = IntentionDetector(
        use_llm_fallback=use_llm_fallback,
        max_history_chars=max_history_chars,
    )
    history: List[ConversationTurn] = []

    table = Table(title="MIRS Category Detection", show_header=True)
    table.add_column("#", style="dim", justify="right")
    table.add_column("Message", style="white", max_width=60)
    table.add_column("Category", style="cyan")
    table.add_column("Reason", style="green")

    for i, text in enumerate(messages, 1):
        result = await detector.detect(text, history)
        history.append(ConversationTurn(role="user", content=text))
        table.add_row(
            str(i),
            text,
            f"{result.category.value} ({category_label(result.category)})",
            result.reason,
        )

    console.print(table)


def main():
    parser = argparse.ArgumentParser(description="Detect MIRS categories for learner messages")
    parser.add_argument("messages", nargs="*", help="Messages, in conversation order")
    parser.add_argument("--file", type=str, default=None, help="File with one message per line")
    parser.add_argument("--no-llm", action="store_true", help="Disable the LLM fallback")
    args = parser.parse_args()

    messages = read_messages(args)
    if not messages:
        console.print("[red]No messages given[/red]")
        return

    settings = load_settings()
    use_llm = settings.detector.use_llm_fallback and not args.no_llm
    asyncio.run(run(messages, use_llm, settings.detector.max_history_chars))


if __name__ == "__main__":
    main()
