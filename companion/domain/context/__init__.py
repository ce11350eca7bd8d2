 # This package keeps every prompt inside its budget

# +---------------------+
# |  Long-term memory   |   (vector store, scoped session/user/server)
# |---------------------|
# | Facts, preferences  |
# | Instructions        |
# | Session summaries   |
# +---------------------+

# +---------------------+
# |  Short-term history |   (runtime cache + session repository)
# |---------------------|
# | Recent turns        |
# | Running summary     |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |        Prompt context        |   (rebuilt for every reply)
# |------------------------------|
# | Persona + running summary    |
# | Literal turns still in       |
# |   context                    |
# | Memory note (volatile, last) |
# +------------------------------+
#         |
#   compaction when the usage
#   crosses the token budget
