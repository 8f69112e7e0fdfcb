# This module assembles the prompt a card is answered with

# +---------------------+
# |   Direct parents    |   (Full question + answer, or quote + source)
# +---------------------+
#
# +---------------------+
# |     Ancestors       |   (BFS upward, nearest first, exclusions skipped)
# |---------------------|
# | Quote from below    |
# | Summary / prefix    |
# +---------------------+
#
#    \    /
#     \  /
#      \/
# +------------------------------+
# |        System message        |
# |------------------------------|
# | System prompt                |
# | === PARENT CARD ===          |
# | === ANCESTOR (level -n) ===  |
# +------------------------------+
#         |
#         v
#   [Chat model] <- Human message (card prompt)
