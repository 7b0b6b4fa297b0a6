"""
Rich text formatting for MCP tool outputs.

Transforms tasks, progress and session summaries into chat-friendly text.
"""

from typing import Optional

from evalblocks import Task

# Status emoji mapping
STATUS_EMOJI = {
    "initializing": "⏳",
    "loading_tasks": "⏳",
    "needs_survey": "📋",
    "training": "🎓",
    "evaluating": "📝",
    "complete": "✅",
    "error": "❌",
}

SCORE_RUBRIC = {
    0: "no similarity / contradictory",
    1: "minimal overlap",
    2: "partial overlap, key findings differ",
    3: "mostly similar, some differences",
    4: "very similar, minor differences",
    5: "semantically equivalent",
}


def format_score_bar(score: int) -> str:
    """Render a 0-5 score as filled and empty blocks."""
    return "■" * score + "□" * (5 - score)


def format_rubric() -> str:
    lines = ["📏 **Scoring rubric** (0-5):"]
    for score, meaning in SCORE_RUBRIC.items():
        lines.append(f"   {score} {meaning}")
    return "\n".join(lines)


def format_task_display(task: Task, position: Optional[str] = None, include_sources: bool = False) -> str:
    """
    Format a task for chat display.

    Shows the reference conclusion and both candidates. Source abstracts are
    long, so they are listed only on request.
    """
    lines = []

    header = f"📄 **Task {task.id}**"
    if task.is_training:
        header += " (training)"
    if position:
        header += f" · {position}"
    lines.append(header)
    if task.title:
        lines.append(f"   {task.title}")
    lines.append("─" * 50)

    lines.append("📖 REFERENCE:")
    lines.append(f"   {task.reference_text}")
    lines.append("")
    lines.append("🅰️ CANDIDATE A:")
    lines.append(f"   {task.candidate_a}")
    lines.append("")
    lines.append("🅱️ CANDIDATE B:")
    lines.append(f"   {task.candidate_b}")

    if include_sources and task.source_documents:
        lines.append("")
        lines.append(f"📚 SOURCES ({len(task.source_documents)}):")
        for i, doc in enumerate(task.source_documents, 1):
            lines.append(f"   [{i}] {doc}")

    lines.append("─" * 50)
    return "\n".join(lines)


def format_progress_display(progress: Optional[dict]) -> str:
    """Format progress through the assigned block."""
    if not progress or progress.get("block_number") is None:
        return "📦 No block assigned yet."

    completed = progress.get("completed", 0)
    total = progress.get("total", 0)
    pct = (completed / total * 100) if total else 0

    lines = [f"📦 **Block {progress['block_number']}**: {completed}/{total} ({pct:.0f}%)"]
    if progress.get("is_complete"):
        lines.append("   ✅ All tasks in this block are evaluated.")
    else:
        lines.append(f"   Next task: {progress.get('next_task_id')} · {progress.get('remaining', 0)} remaining")
    return "\n".join(lines)


def format_training_feedback(result: dict) -> str:
    """Compare training scores with the reference scores."""
    lines = [f"🎓 **Training task {result['task_id']}**"]
    correct = result.get("correct_scores")
    for key, label in (("score_a", "A"), ("score_b", "B")):
        given = result[key]
        line = f"   {label}: {format_score_bar(given)} {given}"
        if correct:
            expected = correct[key]
            mark = "✅" if given == expected else f"(reference {expected})"
            line += f" {mark}"
        lines.append(line)
    return "\n".join(lines)


def format_submission_result(result: dict) -> str:
    """Format evaluation submission result."""
    lines = [
        f"✅ **Scores saved** - task {result['task_id']}",
        f"   A: {format_score_bar(result['score_a'])} {result['score_a']}",
        f"   B: {format_score_bar(result['score_b'])} {result['score_b']}",
    ]
    lines.append(format_progress_display(result.get("progress")))
    return "\n".join(lines)


def format_session_stats(stats: dict) -> str:
    """Format session statistics."""
    lines = []

    status = stats.get("status", "unknown")
    lines.append("📊 **Session Statistics**")
    lines.append("─" * 30)
    lines.append(f"{STATUS_EMOJI.get(status, '❓')} Status: {status}")

    if stats.get("email"):
        lines.append(f"👤 Annotator: {stats['email']} ({stats.get('expertise_group') or 'no survey yet'})")

    block = stats.get("block_number")
    lines.append(f"📦 Block: {block if block is not None else '(none)'}")
    lines.append(f"🎓 Training reviewed: {stats.get('training_reviewed', 0)}/{stats.get('training_total', 0)}")
    lines.append(f"✅ Evaluations submitted: {stats.get('evaluations_submitted', 0)}")

    if stats.get("allocation_conflicts"):
        lines.append(f"🔁 Reservation retries: {stats['allocation_conflicts']}")
    if stats.get("no_work_available"):
        lines.append("🏁 No more work available")
    if stats.get("error"):
        lines.append(f"⚠️ Error: {stats['error']}")

    lines.append(f"🕐 Started: {stats.get('session_started', 'unknown')}")
    return "\n".join(lines)


def format_status_message(status: str, no_work_available: bool = False, error: Optional[str] = None) -> str:
    """One-line description of what the annotator should do next."""
    if status == "needs_survey":
        return "📋 Please answer the background survey: medical or general (submit_survey)."
    if status == "training":
        return "🎓 Training: score the practice task, then compare with the reference scores."
    if status == "evaluating":
        return "📝 Score the current task (submit_scores)."
    if status == "complete":
        if no_work_available:
            return "🏁 Thank you! There is no more work available right now."
        return "✅ Thank you! Your block is complete."
    if status == "error":
        return format_error(error or "Unknown error") + " Use retry_session to start again."
    return f"{STATUS_EMOJI.get(status, '❓')} {status}"


def format_error(message: str) -> str:
    """Format an error message."""
    return f"❌ **Error:** {message}"
