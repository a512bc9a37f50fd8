"""
Program Model: typed, arena-owned tree of one compilation unit and its builder.
"""
