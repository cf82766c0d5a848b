"""
speech — Speech input/output channel contracts and their back-ends.
"""
