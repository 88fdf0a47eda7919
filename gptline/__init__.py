"""
gptline — streaming completions and chat from the command line.
"""

__version__ = "1.0.0"
