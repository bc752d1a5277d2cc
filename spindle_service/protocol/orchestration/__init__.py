"""
Turn execution: the tag demultiplexer, the per-turn execution lane, the
tool stream processor and the multi-step agent loop. Import from the
submodules directly; tools.base depends on messages in this package.
"""
