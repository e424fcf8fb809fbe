"""Domain layer - models, enums, errors, rule AST"""
