"""State layer.

The coalescer here is the only component allowed to mutate the local state
snapshot and its queue of completion callbacks.
"""
