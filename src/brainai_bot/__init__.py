"""
BrainAI Bot - quota-governed generation broker
Brokers text, image and video requests to external AI providers under a metered quota
"""
