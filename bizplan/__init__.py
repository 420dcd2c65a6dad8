"""
Business plan co-editing service: document/task trees and AI pending changes
"""
