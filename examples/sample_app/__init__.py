"""Sample screen wired to generated one-shot state events.

Generate the event modules before importing anything here:

    stategen --source-root examples
"""
