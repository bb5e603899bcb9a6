"""Repository layer for the conversation policy engine.

Plain async functions taking an AsyncSession first:
- conversations: get/require (optionally row-locked), get_or_create, update_fields,
                 clear_expired_takeover, find_silent
- messages: add, recent, outbound_since
- goals: create, get_active, abandon_active, record_progress, finish, history
- followups: create, get, cancel_pending, cancel, count_pending, count_since, get_due,
             get_scheduled, mark_sent, record_failure, reschedule
- engagement: add, own_inbound, peer_inbound, analytics
- labels: add_history, history
- takeovers: add, resolve_open, history
- settings: get, write_versioned, active_opt_out_phrases
- audit: log_action, recent_actions
"""
