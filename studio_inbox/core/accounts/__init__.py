"""Account configuration loading and seeding"""
