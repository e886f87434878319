# Model context for one user turn

# +---------------------+
# |  Checkpoint store   |   (Persistent, keyed by conversation id, TTL)
# |---------------------|
# | User turns          |
# | Assistant turns     |
# | Tool invocations    |
# +---------------------+
#         |
#         v
# +------------------------------+
# |           Context            |   (Rebuilt on every request)
# |------------------------------|
# | System prompt                |
# | Prior turns + tool messages  |
# | Current user message         |
# | Tool messages of this turn   |
# +------------------------------+
#         |
#         v
#   [model -> tools -> model ...]
