"""Business domains - each with its schemas, repository, service and router"""
