#!/usr/bin/env python3
"""Interactive console for the feedback enrichment pipeline.

Runs the pipeline in-process so that you can:
1. Enter feedback in the terminal and watch it flow through the queue
2. See the stored enrichment once the sentiment worker finishes
3. See alert panels as the alert engine raises them
4. Inspect queue counts with `stats`
"""
import asyncio
import logging
import sys
from typing import Dict

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich import box
from rich.prompt import Prompt

from broadcaster import (
    InMemoryBroadcaster, WebhookBroadcaster, FanOutBroadcaster, TOPIC_SENTIMENT_ANALYZED, TOPIC_ALERT_NEW
)
from config import config
from job_queue import JOB_SENTIMENT, JOB_TRANSCRIPTION
from pipeline import FeedbackPipeline
from schemas import FeedbackChannel

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.WARNING),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

console = Console()

RESULT_TIMEOUT_SECONDS = 120


class InteractiveFeedbackConsole:
    """Interactive front end over a running pipeline."""

    def __init__(self, channel: FeedbackChannel = FeedbackChannel.IN_APP_SURVEY):
        self.channel = channel
        self.events = InMemoryBroadcaster()
        self.pipeline = FeedbackPipeline(
            broadcaster=FanOutBroadcaster(self.events, WebhookBroadcaster())
        )
        self._pending: Dict[str, asyncio.Future] = {}

        self.events.subscribe(TOPIC_SENTIMENT_ANALYZED, self._on_analyzed)
        self.events.subscribe(TOPIC_ALERT_NEW, self._on_alert)

    def _on_analyzed(self, event: dict) -> None:
        future = self._pending.pop(event["data"]["feedbackId"], None)
        if future is not None and not future.done():
            future.set_result(event["data"]["sentiment"])

    def _on_alert(self, event: dict) -> None:
        self.display_alert(event["data"])

    def display_result(self, analysis: dict):
        """Display analysis results in a nice format."""
        table = Table(
            title="📊 Analysis Results",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold magenta"
        )

        table.add_column("Attribute", style="cyan", width=20)
        table.add_column("Value", style="green")

        emotions = ", ".join(
            f"{label} {score:.2f}"
            for label, score in sorted(analysis["emotions"].items(), key=lambda kv: -kv[1])
        )
        table.add_row("Sentiment", analysis["sentiment"])
        table.add_row("Score", f"{analysis['score']:.2f}")
        table.add_row("Confidence", f"{analysis['confidence']:.2f}")
        table.add_row("Primary Emotion", analysis["primary_emotion"] or "-")
        table.add_row("Emotions", emotions or "-")
        table.add_row("Key Phrases", ", ".join(analysis["key_phrases"]) or "-")
        table.add_row("Word Count", str(analysis["word_count"]))

        console.print(table)

    def display_alert(self, alert: dict):
        """Display alert notification."""
        alert_content = f"""
[bold red]{alert['title']}[/bold red]

{alert['message']}

[bold]Type:[/bold] {alert['type']}
[bold]Severity:[/bold] {alert['severity']}
[bold]Channel:[/bold] {alert['channel']}
        """

        panel = Panel(
            alert_content,
            title="🚨 ALERT 🚨",
            border_style="bold red",
            box=box.DOUBLE,
            padding=(1, 2)
        )

        console.print()
        console.print(panel)
        console.print()

    async def display_stats(self):
        status = await self.pipeline.get_queue_status()

        table = Table(title="Queues", box=box.ROUNDED, header_style="bold magenta")
        table.add_column("Queue", style="cyan")
        for column in ("waiting", "active", "completed", "failed"):
            table.add_column(column.capitalize(), justify="right")

        for job_type in (JOB_SENTIMENT, JOB_TRANSCRIPTION):
            counts = status[job_type]
            table.add_row(
                job_type,
                *(str(counts[column]) for column in ("waiting", "active", "completed", "failed"))
            )

        console.print(table)
        if self.pipeline.classifier.cache is not None:
            stats = self.pipeline.classifier.cache.get_stats()
            console.print(
                f"[dim]Cache: {stats['hits']} hits, "
                f"{stats['misses']} misses, "
                f"{stats['size']} entries[/dim]"
            )

    def display_welcome(self):
        """Display welcome message."""
        welcome = f"""
[bold cyan]Feedback Enrichment Pipeline[/bold cyan]
[dim]Interactive Console[/dim]

Feedback is stored, queued and enriched with:
  • Sentiment (five categories, score and confidence)
  • Emotions and key phrases
  • Channel alerts on negative spikes

Commands:
  [green]stats[/green]        queue and cache counters
  [green]voice <url>[/green]  queue a recording for transcription
  [green]quit[/green]         stop the pipeline and exit

Channel: [bold]{self.channel.value}[/bold]
        """

        panel = Panel(
            welcome,
            border_style="bold blue",
            box=box.DOUBLE,
            padding=(1, 2)
        )

        console.print(panel)
        console.print()

    async def submit(self, feedback_text: str):
        feedback, job_id = await self.pipeline.submit_feedback(self.channel, feedback_text)
        console.print(f"[dim]💾 Saved feedback {feedback.id}, queued job {job_id}[/dim]")

        future = asyncio.get_running_loop().create_future()
        self._pending[feedback.id] = future
        try:
            analysis = await asyncio.wait_for(future, timeout=RESULT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            self._pending.pop(feedback.id, None)
            console.print("[yellow]⚠️  Still processing, check `stats` later[/yellow]")
            return

        self.display_result(analysis)

    async def submit_voice(self, audio_url: str):
        feedback, job_id = await self.pipeline.submit_voice_feedback(audio_url)
        console.print(
            f"[dim]🎙️  Saved voice feedback {feedback.id}, queued transcription job {job_id}[/dim]"
        )

    async def run_interactive(self):
        """Run the interactive CLI loop."""
        self.display_welcome()

        while True:
            console.print()
            console.print("[bold]Enter feedback to analyze[/bold] (or 'quit' to exit):")
            console.print()

            # Prompt blocks; keep the event loop free for the workers
            feedback_text = await asyncio.to_thread(Prompt.ask, "Your feedback")
            command = feedback_text.strip()

            if command.lower() in ['quit', 'exit', 'q']:
                console.print("\n[cyan]Goodbye![/cyan]\n")
                break

            if not command:
                console.print("[red]⚠️  Feedback cannot be empty[/red]")
                continue

            if command.lower() == "stats":
                await self.display_stats()
                continue

            if command.lower().startswith("voice "):
                await self.submit_voice(command[6:].strip())
                continue

            console.print()
            console.print("[bold]Processing your feedback...[/bold]")
            console.print()
            await self.submit(command)


async def main():
    """Main entry point."""
    system = InteractiveFeedbackConsole()

    console.print("[cyan]Starting pipeline...[/cyan]")
    await system.pipeline.start()

    try:
        await system.run_interactive()
    finally:
        await system.pipeline.shutdown(grace=5)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        console.print("\n\n[cyan] Goodbye![/cyan]\n")
        sys.exit(0)
