#!/usr/bin/env python3
"""
Scripted attacker for the Text Captcha service

Drives the widget API the way a bot would: mounts a widget, fakes pointer
activity, "types" an answer with a chosen cadence and submits it. The
`solver` turns the challenge image into a guess; the default one guesses
blindly, which exercises the lockout.
"""

import argparse
import json
import random
import time

import requests

from challenge_widget import CHALLENGE_CHARSET, DEFAULT_CONFIG

STRATEGIES = ('instant', 'uniform', 'human_like')


def blind_solver(challenge_image, rng=None):
    rng = rng or random.Random()
    return ''.join(rng.choice(CHALLENGE_CHARSET) for _ in range(DEFAULT_CONFIG['challenge_length']))


def plan_attack(answer, strategy, rng=None):
    """Pointer moves, per-keystroke delays (ms) and the pause before verifying"""
    rng = rng or random.Random()

    if strategy == 'instant':
        # Whole answer in one input event, no mouse, submit right away
        return {'pointer_moves': 0, 'keystrokes': [(0, answer)], 'pre_verify_wait_ms': 0}

    if strategy == 'uniform':
        keystrokes = [(40, answer[:i + 1]) for i in range(len(answer))]
        return {'pointer_moves': 10, 'keystrokes': keystrokes, 'pre_verify_wait_ms': 1200}

    if strategy == 'human_like':
        keystrokes = [(rng.randint(120, 300), answer[:i + 1]) for i in range(len(answer))]
        return {'pointer_moves': rng.randint(15, 40), 'keystrokes': keystrokes,
                'pre_verify_wait_ms': rng.randint(300, 800)}

    raise ValueError(f"Unknown strategy: {strategy}")


def _post(http, url, payload=None):
    response = http.post(url, json=payload or {})
    response.raise_for_status()
    return response.json()


def run_attack(base_url, strategy='human_like', solver=None, http=None, sleep=time.sleep, rng=None):
    """Run one attack; returns the plan, the guess and the verify response"""
    http = http or requests.Session()
    rng = rng or random.Random()
    solver = solver or (lambda image: blind_solver(image, rng))
    base_url = base_url.rstrip('/')

    widget = _post(http, f"{base_url}/api/captcha")
    widget_id = widget['widget_id']
    widget_url = f"{base_url}/api/captcha/{widget_id}"

    guess = solver(widget['challenge_image'])
    plan = plan_attack(guess, strategy, rng)

    if plan['pointer_moves']:
        _post(http, f"{widget_url}/pointer", {'count': plan['pointer_moves']})

    for delay_ms, value in plan['keystrokes']:
        if delay_ms:
            sleep(delay_ms / 1000.0)
        _post(http, f"{widget_url}/input", {'value': value})

    if plan['pre_verify_wait_ms']:
        sleep(plan['pre_verify_wait_ms'] / 1000.0)

    result = _post(http, f"{widget_url}/verify")
    return {
        'widget_id': widget_id,
        'strategy': strategy,
        'guess': guess,
        'plan': plan,
        'result': result
    }


def main():
    parser = argparse.ArgumentParser(description="Scripted attacker for the text captcha")
    parser.add_argument('--url', default='http://127.0.0.1:8080')
    parser.add_argument('--strategy', choices=STRATEGIES, default='human_like')
    parser.add_argument('--runs', type=int, default=1)
    args = parser.parse_args()

    http = requests.Session()
    for _ in range(args.runs):
        outcome = run_attack(args.url, args.strategy, http=http)
        print(json.dumps(outcome['result']))


if __name__ == '__main__':
    main()
