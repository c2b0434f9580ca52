# This program is in the public domain
"""
Fit policy parsing.

The fitters are configured with a small set of named options.  Values can
come from code, from the command line as strings, or from a JSON file, so
every option has a parser which converts and checks the value.  Options
that are not given are filled in from :data:`DEFAULT_POLICY`.

    ================ =========================================== ========
    option           meaning                                     default
    ================ =========================================== ========
    strategy         minimizer aggressiveness: 0, 1 or 2         1
    iterationMax     maximum number of minimizer iterations      500
    tolerance        convergence tolerance                       1e-8
    checkGradient    log numeric vs. analytic gradient at start  False
    ================ =========================================== ========

Any problem with the options raises :class:`ConfigurationError` before the
fit starts.
"""

__all__ = ["ConfigurationError", "FitPolicy", "DEFAULT_POLICY", "FIT_FIELDS"]

import json
import math


class ConfigurationError(ValueError):
    """
    Fit setup is inconsistent with the model or the options are malformed.
    """


class ChoiceList(object):
    def __init__(self, *choices):
        self.choices = choices

    def __call__(self, value):
        if value not in self.choices:
            raise ValueError('invalid option "%s": use %s' % (value, "|".join(str(v) for v in self.choices)))
        else:
            return value


def yesno(value):
    if isinstance(value, bool):
        return value
    if str(value).lower() in ("true", "yes", "on", "1"):
        return True
    elif str(value).lower() in ("false", "no", "off", "0"):
        return False
    raise ValueError('invalid option "%s": use yes|no' % value)


def parse_int(value):
    if isinstance(value, bool):
        raise ValueError("integer expected")
    float_value = float(value)
    if int(float_value) != float_value:
        raise ValueError("integer expected")
    return int(float_value)


def parse_strategy(value):
    return ChoiceList(0, 1, 2)(parse_int(value))


def parse_positive_int(value):
    value = parse_int(value)
    if value <= 0:
        raise ValueError("positive integer expected")
    return value


def parse_tolerance(value):
    if isinstance(value, bool):
        raise ValueError("number expected")
    value = float(value)
    if not math.isfinite(value) or value <= 0:
        raise ValueError("positive finite number expected")
    return value


FIT_FIELDS = dict(
    strategy=("Strategy", parse_strategy),
    iterationMax=("Maximum iterations", parse_positive_int),
    tolerance=("Tolerance", parse_tolerance),
    checkGradient=("Check gradient", yesno),
)

#: Default configuration source, merged under the caller's options.
DEFAULT_POLICY = dict(
    strategy=1,
    iterationMax=500,
    tolerance=1e-8,
    checkGradient=False,
)


def parse_option(name, value):
    """
    Convert *value* for option *name*, raising ConfigurationError on failure.
    """
    if name not in FIT_FIELDS:
        raise ConfigurationError("unknown option %r; use %s" % (name, "|".join(sorted(FIT_FIELDS))))
    parse = FIT_FIELDS[name][1]
    try:
        return parse(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("error in %s: %s" % (name, str(exc)))


class FitPolicy(object):
    """
    Fit settings with defaults merged in.

    *options* is a mapping of option name to value.  Values may be given
    as strings, e.g., from the command line.

    *defaults* is the default configuration source, which defaults to
    :data:`DEFAULT_POLICY`.  Every option in :data:`FIT_FIELDS` must be
    supplied by either *options* or *defaults*.

    Options are available as items, ``policy["tolerance"]``, or through
    :meth:`as_dict`.
    """

    def __init__(self, options=None, defaults=None):
        defaults = DEFAULT_POLICY if defaults is None else defaults
        merged = dict(defaults)
        merged.update(options if options is not None else {})
        values = {}
        for name, value in merged.items():
            values[name] = parse_option(name, value)
        missing = [name for name in FIT_FIELDS if name not in values]
        if missing:
            raise ConfigurationError("missing options: %s" % ", ".join(missing))
        self._values = values

    @classmethod
    def from_file(cls, path, defaults=None):
        """
        Load options from a JSON file containing a single object.
        """
        with open(path, "r") as fid:
            try:
                options = json.load(fid)
            except ValueError as exc:
                raise ConfigurationError("could not parse %s: %s" % (path, exc))
        if not isinstance(options, dict):
            raise ConfigurationError("%s should contain a JSON object of options" % path)
        return cls(options, defaults=defaults)

    def __getitem__(self, name):
        return self._values[name]

    def __contains__(self, name):
        return name in self._values

    def as_dict(self):
        return dict(self._values)

    def __repr__(self):
        pairs = ", ".join("%s=%r" % (k, self._values[k]) for k in sorted(self._values))
        return "FitPolicy(%s)" % pairs


def test_policy_defaults():
    policy = FitPolicy()
    assert policy.as_dict() == DEFAULT_POLICY
    policy = FitPolicy(dict(strategy="2", checkGradient="yes", tolerance="1e-3"))
    assert policy["strategy"] == 2
    assert policy["checkGradient"] is True
    assert policy["tolerance"] == 1e-3
    assert policy["iterationMax"] == DEFAULT_POLICY["iterationMax"]


def test_policy_errors():
    bad = [
        dict(strategy=3),
        dict(strategy=1.5),
        dict(iterationMax=0),
        dict(tolerance=-1),
        dict(tolerance="fast"),
        dict(checkGradient="maybe"),
        dict(verbose=True),
    ]
    for options in bad:
        try:
            FitPolicy(options)
        except ConfigurationError:
            pass
        else:
            raise AssertionError("accepted bad options %s" % options)

    try:
        FitPolicy(defaults=dict(strategy=1))
    except ConfigurationError as exc:
        assert "iterationMax" in str(exc)
    else:
        raise AssertionError("accepted incomplete defaults")
