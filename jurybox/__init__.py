"""JuryBox deliberation core: multi-judge scoring over an ordered message log."""

# Semantic version - update this when releasing
__version__ = "0.1.0"
