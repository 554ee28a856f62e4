from django.dispatch import Signal

# Sent when a render cycle starts executing its async body.
# Arguments: `sender` - identity of the view (class or function), `cycle` - the `RenderCycle`
cycle_started = Signal()

# Sent once when a render cycle resolves or rejects, right after its `complete` event.
# Arguments: `sender`, `cycle`
cycle_settled = Signal()

# Sent when a live render cycle is cancelled (superseded or its view was removed).
# Arguments: `sender`, `cycle`
cycle_cancelled = Signal()
