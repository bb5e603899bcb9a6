"""Conversation policy engine.

Modules:
- signals: behavioral signal extraction from message history
- labels: keyword label classification and guarded label transitions
- safety: the safety gate, takeover, opt-out and confidence handling
- goals: conversation goals, prompt shaping and progress tracking
- best_time: per-contact best-time-to-contact estimation
- followups: follow-up scheduling, Fibonacci cadence and retry policy
- splitter: splitting long replies into paced chunks
- policy: the per-decision ConversationPolicy value object
- config: versioned account configuration snapshots
- dispatch: chunked reply delivery with per-chunk safety re-checks
- conversation: inbound, reply and scheduled follow-up event handlers
"""
