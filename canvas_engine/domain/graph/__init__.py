# Cards and edges, and the two things derived from them.
#
#   GraphStore ──events──> StalenessPropagator
#       │                        │
#       └──── read by ───> ContextFingerprinter
#
# A card is stale when the fingerprint of its current context differs from
# the one saved when its response was produced. Only answered cards can be
# stale.
