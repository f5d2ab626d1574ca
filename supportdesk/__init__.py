"""Support ticket lifecycle, SLA tracking and ticket numbering."""
