from .event_tail import EventTail, parse_lines, read_events

__all__ = ["EventTail", "parse_lines", "read_events"]
