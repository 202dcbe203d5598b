#!/usr/bin/env python3
"""Greets whoever is named on stdin; answers arrive one per line."""
import sys

answers = sys.stdin.read().splitlines()
name = answers[0] if answers else "stranger"
print(f"Hello, {name}!")
if len(answers) > 1:
    print(f"You are {answers[1]} years old.")
if len(answers) > 2 and answers[2] == "y":
    print("Failing as requested.", file=sys.stderr)
    sys.exit(1)
print("Exiting normally.")
sys.exit(0)
