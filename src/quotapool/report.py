from .pool import UsageStats


def _status(failed: bool, locked: bool) -> str:
    if failed:
        return "FAILED"
    return "BUSY" if locked else "ACTIVE"


def format_usage_report(stats: UsageStats) -> str:
    """Render a pool snapshot as the human-readable block printed after a run."""
    lines = [
        f"API keys: {stats.total} total, {stats.available} available, {stats.failed} failed"
    ]
    for k in stats.keys:
        line = f"  Key {k.index + 1} ({k.masked}): {k.calls} calls, {_status(k.failed, k.locked)}"
        if stats.capacity:
            pct = k.window_usage / stats.capacity * 100
            line += f", {k.window_usage:,}/{stats.capacity:,} tokens ({pct:.1f}%)"
            if not k.failed:
                if k.resets_in > 0:
                    line += f", resets in {k.resets_in:.0f}s"
                else:
                    line += ", ready"
        lines.append(line)
    return "\n".join(lines)
