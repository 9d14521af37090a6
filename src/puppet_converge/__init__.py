"""puppet-converge - install and converge Puppet master and agent nodes."""

__version__ = "0.1.0"
