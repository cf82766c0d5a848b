"""
conversation — Turn-taking controller and message history.

The controller keeps the microphone and the speaker mutually exclusive and
decides what each final transcript means in the current phase.
"""
