"""
Interactive dialogic feedback chat for one scored conversation.

This CLI:
1. Connects to the database and resolves the score id
2. Shows the stored conversation so far
3. Sends each typed message through the feedback pipeline
4. Streams the coach reply and shows the detected MIRS category

Usage:
    python cli/chat.py --score-id abc123 --user-id 42
    python cli/chat.py --score-id abc123 --user-id 42 --no-llm-fallback

Type /quit to leave.
"""

import asyncio
import argparse
import logging
import os
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).resolve().parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import asyncpg
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from mirs_coach.config.providers import provider_manager
from mirs_coach.config.settings import load_settings
from mirs_coach.errors import FeedbackError
from mirs_coach.models.feedback import ErrorEvent, FinishEvent, TextDeltaEvent
from mirs_coach.orchestrator import DialogicFeedbackService

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.FileHandler('dialogic_chat.log')]
)
logger = logging.getLogger(__name__)

console = Console()


def print_model_info():
    """Print the configured intention/coach models."""
    validation = provider_manager.validate_all_agents()
    lines = []
    for agent, info in validation.items():
        if info["status"] == "valid":
            lines.append(f"[bold]{agent}:[/bold] {info['provider']} - {info['model']}")
        else:
            lines.append(f"[bold]{agent}:[/bold] [red]{info['error']}[/red]")
    console.print(Panel("\n".join(lines), title="Agent Configuration"))


async def show_history(service: DialogicFeedbackService, user_id: int, score_id: str):
    history = await service.get_conversation_history(user_id, score_id)
    if not history.messages:
        console.print("[dim]No messages yet.[/dim]\n")
        return
    for message in history.messages:
        style = "cyan" if message.role == "user" else "green"
        category = f" [dim]({message.category_detected})[/dim]" if message.category_detected else ""
        console.print(f"[{style}]{message.role}[/{style}]{category}: {message.content}")
    console.print()


async def send(service: DialogicFeedbackService, user_id: int, score_id: str, text: str):
    console.print("[green]coach[/green]: ", end="")
    async for event in service.send_message(user_id, score_id, text):
        if isinstance(event, TextDeltaEvent):
            console.print(event.text_delta, end="", markup=False, highlight=False)
        elif isinstance(event, FinishEvent):
            console.print(
                f"\n[dim]category: {event.category} - {event.category_label} "
                f"({event.reason})[/dim]\n"
            )
        elif isinstance(event, ErrorEvent):
            console.print(f"\n[red]Error ({event.kind}): {event.error}[/red]\n")


async def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Chat with the MIRS dialogic feedback coach for a scored conversation"
    )
    parser.add_argument("--score-id", type=str, required=True, help="Score id of the graded conversation")
    parser.add_argument("--user-id", type=int, required=True, help="Learner user id")
    parser.add_argument("--db-url", type=str, default=None, help="Database URL (default: DATABASE_URL)")
    parser.add_argument(
        "--no-llm-fallback",
        action="store_true",
        help="Disable the LLM fallback of the intention detector"
    )
    args = parser.parse_args()

    try:
        settings = load_settings()
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        return
    if args.no_llm_fallback:
        settings.detector.use_llm_fallback = False

    db_url = args.db_url or settings.database_url
    if not db_url:
        console.print("[red]Error: DATABASE_URL not set[/red]")
        return

    console.print("[bold cyan]=== MIRS DIALOGIC FEEDBACK ===[/bold cyan]")
    print_model_info()

    pool = await asyncpg.create_pool(dsn=db_url, min_size=1, max_size=5)
    try:
        service = DialogicFeedbackService(pool, settings)
        try:
            await show_history(service, args.user_id, args.score_id)
        except FeedbackError as e:
            console.print(f"[red]{e.message}[/red]")
            return

        while True:
            text = await asyncio.to_thread(Prompt.ask, "[cyan]you[/cyan]")
            if text.strip() in ("/quit", "/exit"):
                break
            if not text.strip():
                continue
            await send(service, args.user_id, args.score_id, text)
    finally:
        await pool.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        console.print("\n[yellow]Bye.[/yellow]")
