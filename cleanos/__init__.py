"""CleanOS - booking lifecycle, card-on-file payments and cleaner scheduling"""
