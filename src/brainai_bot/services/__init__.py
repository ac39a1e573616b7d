"""
Quota, admission and task orchestration services
"""
