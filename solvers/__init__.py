"""
Solvers module for fetchgate.

Submodules:
    detector: ``ChallengeDetector`` - classifies pages (Cloudflare,
        DDoS-Guard, none) and runs the ordered sitekey extraction chain.
    captcha: ``ChallengeSolver`` - 2Captcha client speaking both the
        legacy ``in.php`` protocol and the JSON task API, with daily
        budget tracking.
    injector: ``TokenInjector`` - writes solved tokens back into the
        page and submits the challenge form.
"""
