"""Generator engine — turns discovered directories into application descriptors.

Templates are parsed once into tagged segments so that naming is a pure,
total function of (rule, path) and collisions can be detected up front.
"""
